"""Progress updates emitted while an agent run is in flight.

A run reports progress through a *sink*: an async callable receiving
:class:`ProgressUpdate` values. The tracker-backed sink edits the issue's
acknowledgement comment, so updates are throttled to keep comment edits
(and API quota) bounded.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from enhance_ticket.logging import get_logger
from enhance_ticket.types import ProgressKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    """A single progress update."""

    kind: ProgressKind
    message: str


ProgressSink = Callable[[ProgressUpdate], Awaitable[None]]


async def null_progress_sink(update: ProgressUpdate) -> None:
    """Sink that discards updates."""
    return None


class ProgressThrottle:
    """Rate limiter for throttled progress updates.

    ``allow()`` answers whether a throttled update may be sent now and, if
    so, records it. ``mark()`` records an update that bypassed the throttle
    (session start, terminal result) so the next throttled one waits a full
    interval. The first throttled update of a run is always allowed unless
    something was marked before it.
    """

    def __init__(
        self, interval_seconds: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._interval = max(0.0, interval_seconds)
        self._clock = clock
        self._last_sent: float | None = None

    def allow(self) -> bool:
        now = self._clock()
        if self._last_sent is not None and now - self._last_sent < self._interval:
            return False
        self._last_sent = now
        return True

    def mark(self) -> None:
        self._last_sent = self._clock()
