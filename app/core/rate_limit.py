"""Fixed-window rate limiting per API key hash.

The primary counter lives in Redis (``INCR`` + ``EXPIRE`` on a per-window key).
When Redis cannot be reached or times out, the limiter falls back to an
in-process counter store handed in at construction. Under fallback every
process counts on its own, so a key can receive up to
``limit * process count`` requests per window. That trade-off keeps the API
available while Redis is down.
"""
import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    source: str  # redis or memory


class RateLimitStatus(BaseModel):
    count: int
    limit: int
    remaining: int
    reset_at: Optional[float] = None


class InMemoryRateLimitStore:
    """Process-local window counters used while Redis is unavailable."""

    def __init__(self, clock: Clock = time.time, purge_interval: float = 60.0):
        self.clock = clock
        self.purge_interval = purge_interval
        self._entries: Dict[str, Tuple[int, float]] = {}  # key -> (count, reset_at)
        self._last_purge = clock()

    def hit(self, key: str, window: int) -> Tuple[int, float]:
        """Count one request for ``key`` and return (count, reset_at)."""
        now = self.clock()
        self._purge_expired(now)
        count, reset_at = self._entries.get(key, (0, 0.0))
        if reset_at <= now:
            count, reset_at = 0, now + window
        count += 1
        self._entries[key] = (count, reset_at)
        return count, reset_at

    def peek(self, key: str) -> Tuple[int, Optional[float]]:
        count, reset_at = self._entries.get(key, (0, 0.0))
        if reset_at <= self.clock():
            return 0, None
        return count, reset_at

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def _purge_expired(self, now: float) -> None:
        if now - self._last_purge < self.purge_interval:
            return
        self._last_purge = now
        expired = [key for key, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]


class RateLimiter:
    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        fallback: InMemoryRateLimitStore,
        limit: int = 60,
        window: int = 60,
        timeout: float = 2.0,
        retry_interval: float = 60.0,
        clock: Clock = time.time,
    ):
        self.redis_client = redis_client
        self.fallback = fallback
        self.limit = limit
        self.window = window
        self.timeout = timeout
        self.retry_interval = retry_interval
        self.clock = clock
        self._redis_down_until = 0.0

    @classmethod
    def from_settings(cls, fallback: Optional[InMemoryRateLimitStore] = None) -> "RateLimiter":
        settings = get_settings()
        redis_client = None
        if settings.ENABLE_REDIS_RATE_LIMIT and settings.RATE_LIMIT_REDIS_URL:
            redis_client = redis.from_url(
                settings.RATE_LIMIT_REDIS_URL,
                socket_timeout=settings.STORE_TIMEOUT_SECONDS,
                socket_connect_timeout=settings.STORE_TIMEOUT_SECONDS,
            )
        return cls(
            redis_client,
            fallback or InMemoryRateLimitStore(),
            limit=settings.RATE_LIMIT_MAX_REQUESTS,
            window=settings.RATE_LIMIT_WINDOW_SECONDS,
            timeout=settings.STORE_TIMEOUT_SECONDS,
            retry_interval=settings.REDIS_RETRY_INTERVAL_SECONDS,
        )

    @property
    def redis_available(self) -> bool:
        return self.redis_client is not None and self.clock() >= self._redis_down_until

    def _window_key(self, key: str, now: float) -> Tuple[str, float]:
        index = int(now // self.window)
        return f"ratelimit:{key}:{index}", (index + 1) * self.window

    async def check(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and report whether it fits in the current window."""
        if self.redis_available:
            try:
                return await asyncio.wait_for(self._check_redis(key), timeout=self.timeout)
            except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
                self._mark_redis_down(e)

        count, reset_at = self.fallback.hit(f"ratelimit:{key}", self.window)
        return self._result(count, reset_at, "memory")

    async def _check_redis(self, key: str) -> RateLimitResult:
        window_key, reset_at = self._window_key(key, self.clock())
        pipe = self.redis_client.pipeline()
        pipe.incr(window_key)
        pipe.expire(window_key, self.window + 1)
        results = await pipe.execute()
        return self._result(int(results[0]), reset_at, "redis")

    def _result(self, count: int, reset_at: float, source: str) -> RateLimitResult:
        allowed = count <= self.limit
        if not allowed:
            logger.debug(f"Rate limit hit ({source}): {count}/{self.limit} in {self.window}s window")
        return RateLimitResult(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=reset_at,
            source=source,
        )

    async def status(self, key: str) -> RateLimitStatus:
        """Current window usage for ``key`` without counting a request."""
        if self.redis_available:
            try:
                window_key, reset_at = self._window_key(key, self.clock())
                raw = await asyncio.wait_for(self.redis_client.get(window_key), timeout=self.timeout)
                count = int(raw or 0)
                return RateLimitStatus(
                    count=count,
                    limit=self.limit,
                    remaining=max(0, self.limit - count),
                    reset_at=reset_at,
                )
            except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
                self._mark_redis_down(e)

        count, reset_at = self.fallback.peek(f"ratelimit:{key}")
        return RateLimitStatus(
            count=count,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=reset_at,
        )

    async def reset(self, key: str) -> None:
        if self.redis_available:
            try:
                window_key, _ = self._window_key(key, self.clock())
                await asyncio.wait_for(self.redis_client.delete(window_key), timeout=self.timeout)
            except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
                self._mark_redis_down(e)
        self.fallback.delete(f"ratelimit:{key}")

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()

    def _mark_redis_down(self, error: Exception) -> None:
        self._redis_down_until = self.clock() + self.retry_interval
        logger.warning(
            f"Redis error in rate limiting, using in-memory fallback for "
            f"{self.retry_interval:.0f}s: {error!r}"
        )
