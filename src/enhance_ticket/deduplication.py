"""Deduplication of webhook deliveries.

Webhook sources deliver at-least-once: retries and replays can hand us the
same conceptual change several times. :class:`DeliveryDeduplicator` is a
windowed "seen" cache keyed by delivery identity, so that one state
transition launches at most one agent run.

The cache sweeps itself lazily when it grows past a threshold. There is no
background timer; an idle process holds at most ``sweep_threshold`` keys.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from enhance_ticket.events import ChangeEvent
from enhance_ticket.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DEDUP_WINDOW_SECONDS = 30.0
DEFAULT_SWEEP_THRESHOLD = 1000

# Slower external sources (e.g. repository hosting webhooks) retry over
# minutes rather than seconds.
SLOW_SOURCE_DEDUP_WINDOW_SECONDS = 300.0
SLOW_SOURCE_SWEEP_THRESHOLD = 2000


def build_dedup_key(event: ChangeEvent) -> str:
    """Build the deduplication key for a change event.

    The delivery id identifies a retried delivery exactly, so it wins when
    present. Otherwise the key falls back to the event's structural
    identity: ``{kind}:{operation}:{subject_id}``.

    Args:
        event: The change event.

    Returns:
        A string key for the deduplication cache.
    """
    if event.delivery_id:
        return f"delivery:{event.delivery_id}"
    return f"{event.kind}:{event.operation}:{event.subject_id}"


class DeliveryDeduplicator:
    """Windowed cache of recently seen delivery keys.

    ``seen()`` records a key on first sight and reports repeats within the
    window. A repeat does not refresh the stored timestamp, so a key that
    keeps arriving is admitted again once the window measured from its first
    admission elapses.

    The instance is safe to share between threads: insert and sweep happen
    under a single lock.

    Usage:
        dedup = DeliveryDeduplicator(window_seconds=30.0)
        if dedup.seen(build_dedup_key(event)):
            return  # duplicate delivery
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        sweep_threshold: int = DEFAULT_SWEEP_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the deduplicator.

        Args:
            window_seconds: How long a key suppresses repeats.
            sweep_threshold: Map size above which expired keys are swept.
            clock: Monotonic time source, injectable for tests.
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._window = window_seconds
        self._sweep_threshold = sweep_threshold
        self._clock = clock
        self._lock = threading.Lock()
        self._seen_at: dict[str, float] = {}

    @property
    def window_seconds(self) -> float:
        return self._window

    def seen(self, key: str) -> bool:
        """Check a key and record it if it is new.

        Args:
            key: Deduplication key (see :func:`build_dedup_key`).

        Returns:
            True if the key was already recorded within the window,
            False if it is new (or its previous record expired).
        """
        with self._lock:
            now = self._clock()
            recorded = self._seen_at.get(key)
            if recorded is not None and now - recorded < self._window:
                return True

            self._seen_at[key] = now
            if len(self._seen_at) > self._sweep_threshold:
                self._sweep(now)
            return False

    def _sweep(self, now: float) -> None:
        # Caller holds the lock. Only expired entries are removed.
        expired = [k for k, ts in self._seen_at.items() if now - ts >= self._window]
        for k in expired:
            del self._seen_at[k]
        if expired:
            logger.debug(
                "Swept %d expired dedup keys (%d remain)",
                len(expired),
                len(self._seen_at),
                extra={"diagnostic_tag": "dedup"},
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen_at)

    def clear(self) -> None:
        """Forget every recorded key."""
        with self._lock:
            self._seen_at.clear()
