"""Per-client request limits for the webhook routes.

A fixed window per client key, counted in process memory by the
``limits`` library. The key is the first proxy header present
(``x-forwarded-for``, then ``x-real-ip``) or the peer address.
"""

from __future__ import annotations

import math
import time

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from enhance_ticket.config import RateLimitConfig
from enhance_ticket.logging import get_logger

logger = get_logger(__name__)

RATE_LIMIT_NAMESPACE = "webhook"


def client_key(request: Request) -> str:
    """Identify the client a request is counted against."""
    for header in ("x-forwarded-for", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value
    if request.client is not None:
        return request.client.host
    return "unknown"


class WebhookRateLimiter:
    """Fixed-window limiter shared by the webhook routes.

    Usage:
        limiter = WebhookRateLimiter(config.server.rate_limit)
        retry_after = limiter.check(client_key(request))
        if retry_after is not None:
            ...  # answer 429
    """

    def __init__(self, config: RateLimitConfig) -> None:
        self.enabled = config.enabled
        window = max(1, math.ceil(config.window_seconds))
        self._item = RateLimitItemPerSecond(
            config.max_requests, window, namespace=RATE_LIMIT_NAMESPACE
        )
        self._limiter = FixedWindowRateLimiter(MemoryStorage())

    def check(self, key: str) -> int | None:
        """Count one request for ``key``.

        Returns:
            None when the request is allowed, otherwise the number of
            seconds until the client's window resets.
        """
        if not self.enabled:
            return None
        if self._limiter.hit(self._item, key):
            return None
        reset_at, _ = self._limiter.get_window_stats(self._item, key)
        retry_after = max(1, math.ceil(reset_at - time.time()))
        logger.warning("Rate limit exceeded for %s, retry in %ds", key, retry_after)
        return retry_after
