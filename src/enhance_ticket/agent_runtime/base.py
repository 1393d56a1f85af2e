"""Base classes and types for agent runtime clients.

The agent runtime hosts coding agents (Claude, Codex, ...) in sessions. A
session receives a turn (the prompt) and emits an ordered stream of events;
the same events can also be read back by offset, which is what lets the
runner fall back from streaming to polling without losing its place.

The interface is async-native. Implementations are created once by the
application and injected into the runner.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from enhance_ticket.logging import get_logger
from enhance_ticket.types import AgentName, PermissionMode, PermissionReply

logger = get_logger(__name__)

__all__ = [
    "AgentRuntime",
    "AgentRuntimeError",
    "AgentSessionClosedError",
    "EventPage",
    "RuntimeEvent",
    "TransientStreamError",
    "is_transient_stream_error",
]

# Event types the runner reacts to. Anything else is counted and ignored.
SESSION_STARTED = "session.started"
SESSION_ENDED = "session.ended"
ITEM_COMPLETED = "item.completed"
PERMISSION_REQUESTED = "permission.requested"
QUESTION_REQUESTED = "question.requested"


@dataclass(frozen=True)
class RuntimeEvent:
    """A single event emitted by an agent session.

    Attributes:
        type: Event type, e.g. ``item.completed``.
        data: Event payload. Shape depends on the type.
        sequence: Runtime-assigned sequence number, if provided.
    """

    type: str
    data: Mapping[str, Any] = field(default_factory=dict)
    sequence: int | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> RuntimeEvent:
        data = raw.get("data")
        sequence = raw.get("sequence")
        return cls(
            type=str(raw.get("type", "")),
            data=data if isinstance(data, Mapping) else {},
            sequence=sequence if isinstance(sequence, int) else None,
        )


@dataclass(frozen=True)
class EventPage:
    """A page of events read by offset."""

    events: tuple[RuntimeEvent, ...]
    has_more: bool = False


class AgentRuntimeError(Exception):
    """Raised when an agent runtime operation fails."""

    pass


class TransientStreamError(AgentRuntimeError):
    """Raised when the event stream drops in a way that polling can recover from."""

    pass


class AgentSessionClosedError(AgentRuntimeError):
    """Raised when the runtime reports that the session no longer exists."""

    pass


_TRANSIENT_MESSAGE_MARKERS = (
    "timed out",
    "timeout",
    "unable to connect",
    "connection refused",
    "connection reset",
    "econnrefused",
    "aborted",
)


def is_transient_stream_error(error: BaseException) -> bool:
    """Decide whether a stream failure should fall back to polling.

    Network-level failures (connect/read timeouts, refused or reset
    connections, streams closed mid-response) are transient. HTTP status
    errors and everything else are not.

    Args:
        error: The exception raised while consuming the stream.

    Returns:
        True if the runner should switch to polling.
    """
    if isinstance(error, TransientStreamError):
        return True
    if isinstance(error, AgentSessionClosedError):
        return False
    if isinstance(
        error,
        (
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.RemoteProtocolError,
            ConnectionError,
            TimeoutError,
        ),
    ):
        return True
    if isinstance(error, (httpx.HTTPStatusError, asyncio.CancelledError)):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


class AgentRuntime(ABC):
    """Abstract client for an agent runtime.

    Implementations must be safe to share between concurrent runs; each
    method addresses one session by id.
    """

    @abstractmethod
    async def create_session(
        self,
        session_id: str,
        agent: AgentName,
        permission_mode: PermissionMode,
        agent_mode: str | None = None,
    ) -> None:
        """Create a session that will host one agent run.

        Raises:
            AgentRuntimeError: If the session cannot be created.
        """
        ...

    @abstractmethod
    def stream_turn(self, session_id: str, message: str) -> AsyncIterator[RuntimeEvent]:
        """Submit a turn and stream the session's events as they arrive.

        The iterator ends when the runtime closes the stream. Callers must
        submit a turn at most once per session.

        Raises:
            TransientStreamError: If the stream drops for a network reason.
            AgentSessionClosedError: If the session no longer exists.
        """
        ...

    @abstractmethod
    async def get_events(self, session_id: str, offset: int, limit: int) -> EventPage:
        """Read events starting at ``offset`` (0-based count of events seen)."""
        ...

    @abstractmethod
    async def reply_permission(
        self, session_id: str, permission_id: str, reply: PermissionReply
    ) -> None:
        """Answer a permission request."""
        ...

    @abstractmethod
    async def reject_question(self, session_id: str, question_id: str) -> None:
        """Decline a question the agent asked; runs are unattended."""
        ...

    @abstractmethod
    async def terminate_session(self, session_id: str) -> None:
        """Ask the runtime to stop a session."""
        ...

    async def health(self) -> bool:
        """Report whether the runtime is reachable. Defaults to True."""
        return True

    async def aclose(self) -> None:
        """Release transport resources. No-op by default."""
        return None
