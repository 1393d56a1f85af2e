"""HTTP client for the sandbox agent runtime.

Talks to the runtime's REST API with ``httpx``. Turn submission returns a
server-sent event stream (one JSON event per ``data:`` line); every other
call is a plain JSON request.

Endpoints used::

    POST /v1/sessions/{id}                               create session
    POST /v1/sessions/{id}/messages/stream               submit turn (SSE)
    GET  /v1/sessions/{id}/events?offset=N&limit=M       read events
    POST /v1/sessions/{id}/permissions/{pid}/reply       answer permission
    POST /v1/sessions/{id}/questions/{qid}/reject        decline question
    POST /v1/sessions/{id}/terminate                     stop session
    GET  /v1/health                                      liveness
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Self
from urllib.parse import quote

import httpx

from enhance_ticket.agent_runtime.base import (
    AgentRuntime,
    AgentRuntimeError,
    AgentSessionClosedError,
    EventPage,
    RuntimeEvent,
    TransientStreamError,
    is_transient_stream_error,
)
from enhance_ticket.logging import get_logger
from enhance_ticket.types import AgentName, PermissionMode, PermissionReply

logger = get_logger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)

# Turn streams stay open for the whole run; only connecting is bounded.
STREAM_TIMEOUT = httpx.Timeout(10.0, read=None)

_SESSION_GONE_STATUSES = frozenset({404, 410})


class SandboxAgentClient(AgentRuntime):
    """Agent runtime client over HTTP.

    The client owns an ``httpx.AsyncClient`` unless one is supplied, in
    which case the caller owns it (tests pass one built on
    ``httpx.MockTransport``).

    Usage:
        async with SandboxAgentClient("http://localhost:2468", token="...") as runtime:
            await runtime.create_session("et-eng-42", AgentName.CLAUDE, PermissionMode.DEFAULT)
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )
        if http_client is not None and token:
            self._client.headers.update(headers)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _session_path(session_id: str, suffix: str = "") -> str:
        return f"/v1/sessions/{quote(session_id, safe='')}{suffix}"

    def _raise_for_status(
        self,
        response: httpx.Response,
        session_id: str,
        what: str,
        *,
        session_scoped: bool = True,
    ) -> None:
        # A 404 on a permission or question names a stale request id, not a
        # closed session.
        if session_scoped and response.status_code in _SESSION_GONE_STATUSES:
            raise AgentSessionClosedError(
                f"Session {session_id} not found while trying to {what} "
                f"(HTTP {response.status_code})"
            )
        if response.is_error:
            body = response.text[:500] if response.content else ""
            raise AgentRuntimeError(
                f"Failed to {what} for session {session_id}: HTTP {response.status_code} {body}"
            )

    async def _post(
        self,
        session_id: str,
        path: str,
        what: str,
        payload: dict[str, Any],
        *,
        session_scoped: bool = True,
    ) -> None:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            if is_transient_stream_error(e):
                raise TransientStreamError(f"Failed to {what}: {e}") from e
            raise AgentRuntimeError(f"Failed to {what}: {e}") from e
        self._raise_for_status(response, session_id, what, session_scoped=session_scoped)

    async def create_session(
        self,
        session_id: str,
        agent: AgentName,
        permission_mode: PermissionMode,
        agent_mode: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {"agent": str(agent), "permissionMode": str(permission_mode)}
        if agent_mode:
            payload["agentMode"] = agent_mode
        try:
            response = await self._client.post(self._session_path(session_id), json=payload)
        except httpx.HTTPError as e:
            raise AgentRuntimeError(f"Failed to create session {session_id}: {e}") from e
        if response.is_error:
            raise AgentRuntimeError(
                f"Failed to create session {session_id}: HTTP {response.status_code} "
                f"{response.text[:500]}"
            )
        logger.info("Created agent session %s (agent=%s)", session_id, agent)

    async def stream_turn(self, session_id: str, message: str) -> AsyncIterator[RuntimeEvent]:
        path = self._session_path(session_id, "/messages/stream")
        try:
            async with self._client.stream(
                "POST",
                path,
                json={"message": message},
                headers={"Accept": "text/event-stream"},
                timeout=STREAM_TIMEOUT,
            ) as response:
                if response.is_error:
                    await response.aread()
                    self._raise_for_status(response, session_id, "stream turn")
                async for event in _iter_sse_events(response):
                    yield event
        except httpx.HTTPError as e:
            if is_transient_stream_error(e):
                raise TransientStreamError(f"Event stream for {session_id} dropped: {e}") from e
            raise AgentRuntimeError(f"Event stream for {session_id} failed: {e}") from e

    async def get_events(self, session_id: str, offset: int, limit: int) -> EventPage:
        try:
            response = await self._client.get(
                self._session_path(session_id, "/events"),
                params={"offset": offset, "limit": limit},
            )
        except httpx.HTTPError as e:
            if is_transient_stream_error(e):
                raise TransientStreamError(f"Failed to read events: {e}") from e
            raise AgentRuntimeError(f"Failed to read events: {e}") from e
        self._raise_for_status(response, session_id, "read events")

        try:
            body = response.json()
        except ValueError as e:
            raise AgentRuntimeError(f"Invalid events response for {session_id}: {e}") from e

        raw_events = body.get("events", []) if isinstance(body, dict) else []
        events = tuple(RuntimeEvent.from_dict(raw) for raw in raw_events if isinstance(raw, dict))
        has_more = bool(body.get("hasMore", False)) if isinstance(body, dict) else False
        return EventPage(events=events, has_more=has_more)

    async def reply_permission(
        self, session_id: str, permission_id: str, reply: PermissionReply
    ) -> None:
        await self._post(
            session_id,
            self._session_path(session_id, f"/permissions/{permission_id}/reply"),
            "reply to permission",
            {"reply": str(reply)},
            session_scoped=False,
        )

    async def reject_question(self, session_id: str, question_id: str) -> None:
        await self._post(
            session_id,
            self._session_path(session_id, f"/questions/{question_id}/reject"),
            "reject question",
            {},
            session_scoped=False,
        )

    async def terminate_session(self, session_id: str) -> None:
        await self._post(
            session_id,
            self._session_path(session_id, "/terminate"),
            "terminate session",
            {},
        )
        logger.info("Terminated agent session %s", session_id)

    async def health(self) -> bool:
        try:
            response = await self._client.get("/v1/health")
        except httpx.HTTPError as e:
            logger.warning("Agent runtime health check failed: %s", e)
            return False
        return response.is_success


async def _iter_sse_events(response: httpx.Response) -> AsyncIterator[RuntimeEvent]:
    """Parse server-sent events into runtime events.

    Multi-line ``data:`` fields are joined with newlines; comments and
    non-JSON payloads are skipped.
    """
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
            continue
        if line.strip():
            # event:, id:, retry: fields carry nothing we need
            continue
        if data_lines:
            event = _decode_event("\n".join(data_lines))
            data_lines = []
            if event is not None:
                yield event
    if data_lines:
        event = _decode_event("\n".join(data_lines))
        if event is not None:
            yield event


def _decode_event(payload: str) -> RuntimeEvent | None:
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed event payload: %.200s", payload)
        return None
    if not isinstance(raw, dict):
        return None
    return RuntimeEvent.from_dict(raw)
