"""Fixed-window rate limiting backed by Redis.

Counters live in Redis (not in process memory) so limits hold across
workers and instances. The limiter is built in the app lifespan and handed
to routes through ``app.state``; nothing here is module-level state.

Key pattern: ``cesto:ratelimit:{scope}:{key}:{window_start}``
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int  # seconds until the current window resets


class RateLimiter(Protocol):
    async def hit(self, key: str, now: datetime | None = None) -> RateLimitDecision: ...

    async def close(self) -> None: ...


class RedisRateLimiter:
    """Counts hits per key in fixed windows using INCR + EXPIRE."""

    KEY_PREFIX = "cesto:ratelimit:"

    def __init__(self, redis: Redis, limit: int, window_seconds: int, scope: str = "default"):
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")
        self.redis = redis
        self.limit = limit
        self.window_seconds = window_seconds
        self.scope = scope
        self._closed = False

    def _window_start(self, now: datetime) -> int:
        ts = int(now.timestamp())
        return ts - (ts % self.window_seconds)

    def _key(self, key: str, window_start: int) -> str:
        return f"{self.KEY_PREFIX}{self.scope}:{key}:{window_start}"

    async def hit(self, key: str, now: datetime | None = None) -> RateLimitDecision:
        """Record one hit for ``key`` and decide whether it is allowed.

        Args:
            key: Caller identity (client IP for webhooks)
            now: Current time (for deterministic testing)

        Returns:
            RateLimitDecision for this hit. Redis failures fail open.
        """
        if self._closed:
            raise RuntimeError("Rate limiter is closed")

        now = now or datetime.now(UTC)
        window_start = self._window_start(now)
        retry_after = window_start + self.window_seconds - int(now.timestamp())
        redis_key = self._key(key, window_start)

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, self.window_seconds)
                count, _ = await pipe.execute()
        except Exception as exc:
            logger.warning("rate_limiter_unavailable", scope=self.scope, key=key, error=str(exc))
            return RateLimitDecision(allowed=True, remaining=self.limit, retry_after=0)

        count = int(count)
        if count > self.limit:
            return RateLimitDecision(allowed=False, remaining=0, retry_after=max(retry_after, 1))
        return RateLimitDecision(allowed=True, remaining=self.limit - count, retry_after=retry_after)

    async def reset(self, key: str, now: datetime | None = None) -> None:
        """Drop the current window's counter for ``key`` (admin / tests)."""
        now = now or datetime.now(UTC)
        await self.redis.delete(self._key(key, self._window_start(now)))

    async def close(self) -> None:
        """Stop accepting hits. The Redis pool itself is owned by app.db.redis."""
        self._closed = True
