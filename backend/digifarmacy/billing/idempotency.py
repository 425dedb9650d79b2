"""Idempotency stores for webhook message ids.

Pub/Sub push delivery is at-least-once, so every message id is recorded on
first sight and consulted before any side effect. Both stores evict entries
after the retention window.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from cachetools import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60
_DEFAULT_MAX_ENTRIES = 100_000


class IdempotencyStore(Protocol):
    async def is_processed(self, message_id: str) -> bool: ...

    async def mark_processed(self, message_id: str) -> bool:
        """Record the id; return False if it was already recorded."""
        ...

    async def discard(self, message_id: str) -> None:
        """Forget an id so a redelivery is processed again."""
        ...


class MemoryIdempotencyStore:
    """Process-local store; correct for a single instance only."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_RETENTION_SECONDS,
        maxsize: int = _DEFAULT_MAX_ENTRIES,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._seen: TTLCache[str, datetime] = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._lock = Lock()

    async def is_processed(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._seen

    async def mark_processed(self, message_id: str) -> bool:
        with self._lock:
            if message_id in self._seen:
                return False
            self._seen[message_id] = datetime.now(timezone.utc)
            return True

    async def discard(self, message_id: str) -> None:
        with self._lock:
            self._seen.pop(message_id, None)

    def first_seen(self, message_id: str) -> datetime | None:
        with self._lock:
            return self._seen.get(message_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class RedisIdempotencyStore:
    """Shared store for multi-instance deployments (``SET NX EX``)."""

    def __init__(
        self,
        redis,
        ttl_seconds: int = DEFAULT_RETENTION_SECONDS,
        prefix: str = "webhook:seen:",
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = prefix

    async def is_processed(self, message_id: str) -> bool:
        return bool(await self._redis.exists(self._prefix + message_id))

    async def mark_processed(self, message_id: str) -> bool:
        first_seen = datetime.now(timezone.utc).isoformat()
        created = await self._redis.set(self._prefix + message_id, first_seen, nx=True, ex=self._ttl)
        return bool(created)

    async def discard(self, message_id: str) -> None:
        await self._redis.delete(self._prefix + message_id)
