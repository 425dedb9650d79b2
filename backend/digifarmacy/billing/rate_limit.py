"""Per-user, per-endpoint rate limiting for subscription endpoints.

Two interchangeable strategies share the :class:`RateLimitResult` contract:

- :class:`FixedWindowRateLimiter` counts requests per ``(identifier, endpoint)``
  in a window that resets ``window_seconds`` after its first request.
- :class:`SlidingWindowRateLimiter` keeps request timestamps and counts the
  trailing window; smoother, but memory grows with request rate.

Counters live in process memory unless a Redis client is supplied, which is
required once more than one instance serves traffic. Store failures fail
open: the request is allowed and the anomaly logged.
"""

import logging
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from cachetools import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60
DEFAULT_LIMITS: dict[str, int] = {
    "initiate": 10,
    "verify-purchase": 5,
    "status": 20,
    "cancel": 5,
    "webhook": 100,  # Google Pub/Sub is trusted more
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # unix seconds
    retry_after: int = 0  # seconds, only meaningful when not allowed

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitStore(Protocol):
    async def increment(self, key: str, window_seconds: int) -> tuple[int, float]:
        """Increment ``key`` and return ``(count, window_reset_at)``."""
        ...


class MemoryRateLimitStore:
    """Fixed-window counters in process memory.

    Entries live in a ``TTLCache`` whose TTL is the window, so counters for
    identifiers that stop sending are evicted on later writes. ``window_seconds``
    passed to :meth:`increment` must not exceed the store's own window.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        max_keys: int = 100_000,
    ) -> None:
        self._counters: TTLCache[str, tuple[int, float]] = TTLCache(
            maxsize=max_keys, ttl=window_seconds, timer=clock
        )
        self._clock = clock
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    async def increment(self, key: str, window_seconds: int) -> tuple[int, float]:
        now = self._clock()
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or now >= entry[1]:
                entry = (1, now + window_seconds)
            else:
                entry = (entry[0] + 1, entry[1])
            self._counters[key] = entry
            return entry

    async def get(self, key: str) -> int:
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or self._clock() >= entry[1]:
                return 0
            return entry[0]

    def cleanup(self) -> None:
        with self._lock:
            self._counters.expire()


class RedisRateLimitStore:
    """Fixed-window counters shared across instances via ``INCR``/``EXPIRE``."""

    def __init__(self, redis, clock: Callable[[], float] = time.time) -> None:
        self._redis = redis
        self._clock = clock

    async def increment(self, key: str, window_seconds: int) -> tuple[int, float]:
        pipe = self._redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        pipe.ttl(key)
        count, _, ttl = await pipe.execute()
        if ttl is None or ttl < 0:
            ttl = window_seconds
        return int(count), self._clock() + ttl


class FixedWindowRateLimiter:
    """Blocks once the post-increment count exceeds the endpoint's budget."""

    def __init__(
        self,
        store: RateLimitStore,
        limits: dict[str, int] | None = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self.window_seconds = window_seconds
        self._clock = clock

    def limit_for(self, endpoint: str) -> int:
        return self.limits[endpoint]

    async def hit(self, identifier: str, endpoint: str) -> RateLimitResult:
        limit = self.limit_for(endpoint)
        now = self._clock()
        key = f"ratelimit:{endpoint}:{identifier}"
        try:
            count, reset_at = await self.store.increment(key, self.window_seconds)
        except Exception as exc:
            logger.warning(
                "Rate limiter store error (%s) on %s, allowing request",
                exc.__class__.__name__,
                endpoint,
            )
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit,
                reset_at=math.ceil(now + self.window_seconds),
            )

        if count > limit:
            retry_after = max(1, math.ceil(reset_at - now))
            logger.warning("Rate limit exceeded for %s on %s: %d/%d", identifier, endpoint, count, limit)
            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=math.ceil(reset_at),
                retry_after=retry_after,
            )
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=math.ceil(reset_at),
        )


class SlidingWindowRateLimiter:
    """Counts requests within the trailing window from stored timestamps."""

    def __init__(
        self,
        limits: dict[str, int] | None = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        redis=None,
        clock: Callable[[], float] = time.time,
        max_keys: int = 10_000,
    ) -> None:
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self.window_seconds = window_seconds
        self._redis = redis
        self._clock = clock
        self._windows: TTLCache[str, deque[float]] = TTLCache(
            maxsize=max_keys, ttl=window_seconds, timer=clock
        )
        self._lock = Lock()

    def _trim(self, window: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def _hit_memory(self, key: str, limit: int, now: float) -> RateLimitResult:
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = deque()
            self._trim(window, now)

            if len(window) >= limit:
                retry_after = max(1, math.ceil(window[0] + self.window_seconds - now))
                self._windows[key] = window
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=math.ceil(window[0] + self.window_seconds),
                    retry_after=retry_after,
                )

            window.append(now)
            self._windows[key] = window
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - len(window)),
                reset_at=math.ceil(window[0] + self.window_seconds),
            )

    async def _hit_redis(self, key: str, limit: int, now: float) -> RateLimitResult:
        pipe = self._redis.pipeline()
        pipe.zremrangebyscore(key, 0, now - self.window_seconds)
        pipe.zcard(key)
        pipe.zadd(key, {str(now): now})
        pipe.expire(key, self.window_seconds)
        results = await pipe.execute()
        current = int(results[1])

        if current >= limit:
            # The rejected request must not occupy a slot
            await self._redis.zrem(key, str(now))
            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=math.ceil(now + self.window_seconds),
                retry_after=self.window_seconds,
            )
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - current - 1),
            reset_at=math.ceil(now + self.window_seconds),
        )

    async def hit(self, identifier: str, endpoint: str) -> RateLimitResult:
        limit = self.limits[endpoint]
        now = self._clock()
        key = f"ratelimit:sliding:{endpoint}:{identifier}"
        if self._redis is None:
            return self._hit_memory(key, limit, now)
        try:
            return await self._hit_redis(key, limit, now)
        except Exception as exc:
            logger.warning(
                "Rate limiter: Redis error (%s) on %s, allowing request",
                exc.__class__.__name__,
                endpoint,
            )
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit,
                reset_at=math.ceil(now + self.window_seconds),
            )

    def remaining(self, identifier: str, endpoint: str) -> int:
        """Requests left in the window for the in-memory backend."""
        limit = self.limits[endpoint]
        key = f"ratelimit:sliding:{endpoint}:{identifier}"
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return limit
            self._trim(window, self._clock())
            return max(0, limit - len(window))

    def cleanup(self) -> None:
        with self._lock:
            self._windows.expire()


@dataclass(frozen=True)
class ResourceThresholds:
    """Utilisation percentages above which capacity shrinks."""

    cpu: float = 80.0
    memory: float = 85.0
    db_connections: float = 90.0


class AdaptiveRateLimiter:
    """Scales a base limit down under CPU, memory or DB-connection pressure."""

    def __init__(self, base_limit: int = 100, thresholds: ResourceThresholds | None = None) -> None:
        self.base_limit = base_limit
        self.thresholds = thresholds or ResourceThresholds()

    def limit_for(self, cpu_usage: float, memory_usage: float, db_connections: float) -> int:
        limit = self.base_limit
        if cpu_usage > self.thresholds.cpu:
            limit = math.floor(limit * 0.7)
        if memory_usage > self.thresholds.memory:
            limit = math.floor(limit * 0.6)
        if db_connections > self.thresholds.db_connections:
            limit = math.floor(limit * 0.5)
        return max(1, limit)
