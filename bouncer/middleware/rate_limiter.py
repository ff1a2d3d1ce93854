"""
Rate Limiter - Redis-based fixed-window counting.

Used at the API edge (per IP + User-Agent) and inside the notification
dispatcher (per recipient + channel).

Design:
- Counter key is ``ratelimit:{identifier}:{window_index}`` where
  ``window_index = floor(now_ms / (window_seconds * 1000))``
- First hit creates the counter with TTL = window_seconds, later hits
  increment it; both happen in one atomic Lua round trip
- O(1) per check. A burst of up to 2x the limit is possible across a
  window boundary
- Fail-open by default (if Redis is down, allow requests)

Usage:
    from bouncer.middleware.rate_limiter import rate_limiter

    result = await rate_limiter.check_limit("ip:1.2.3.4", limit=100, window_seconds=60)
    if not result.allowed:
        ...
"""

import math
import time
from dataclasses import dataclass
from datetime import UTC, datetime

from bouncer.config import settings
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.services.infrastructure.redis_client import redis_client

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    limit: int
    count: int
    error: str | None = None

    @property
    def retry_after(self) -> int:
        """Whole seconds until the current window closes (at least 1)."""
        delta = (self.reset_time - datetime.now(UTC)).total_seconds()
        return max(1, math.ceil(delta))

    def to_dict(self) -> dict:
        info = {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat(),
            "retry_after": 0 if self.allowed else self.retry_after,
        }
        if self.error:
            info["error"] = self.error
        return info


class RateLimiter:
    """
    Fixed-window rate limiter over the shared key-value store.

    The store must provide ``incr_window(key, ttl_s) -> int | None``.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(self, store=None, fail_open: bool = True, clock=time.time):
        self.store = store or redis_client
        self.fail_open = fail_open
        self._clock = clock

    async def check_limit(
        self, identifier: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        """
        Count one hit for ``identifier`` and report whether it is within ``limit``.

        Args:
            identifier: Key being limited (e.g. "ip:1.2.3.4|curl/8" or "notify:alice:email")
            limit: Allowed hits per window
            window_seconds: Window length

        Returns:
            RateLimitResult with allowed = (count <= limit)
        """
        if limit < 0 or window_seconds <= 0:
            raise ValueError("limit must be >= 0 and window_seconds > 0")

        now = self._clock()
        window_index = math.floor(now * 1000 / (window_seconds * 1000))
        key = f"{self.KEY_PREFIX}:{identifier}:{window_index}"
        reset_time = datetime.fromtimestamp((window_index + 1) * window_seconds, tz=UTC)

        count = await self.store.incr_window(key, window_seconds)

        if count is None:
            logger.error(
                "Rate limiter store unavailable",
                identifier=identifier,
                limit=limit,
                fail_open=self.fail_open,
            )
            return RateLimitResult(
                allowed=self.fail_open,
                remaining=limit if self.fail_open else 0,
                reset_time=reset_time,
                limit=limit,
                count=0,
                error="rate_limiter_error",
            )

        allowed = count <= limit
        if not allowed:
            logger.debug("Rate limit exceeded", identifier=identifier, count=count, limit=limit)

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_time=reset_time,
            limit=limit,
            count=count,
        )

    async def check_client_rate_limit(
        self, ip_address: str, user_agent: str | None, limit: int | None = None
    ) -> RateLimitResult:
        """Per IP + User-Agent limit for the HTTP edge."""
        return await self.check_limit(
            identifier=f"client:{ip_address}|{user_agent or '-'}",
            limit=limit or settings.RATE_LIMIT_API_MAX,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        )


# Global singleton
rate_limiter = RateLimiter(fail_open=settings.RATE_LIMIT_FAIL_OPEN)
