"""Key/value stores with TTLs — usage counters, in-app feeds, dedupe markers.

Key schema:
- usage:{user_id}:{capability}:{yyyy-mm-dd}   -> integer counter (TTL 2 days)
- notifications:{user_id}                     -> list of JSON notifications (newest first)
- expiry-warning:{subscription_id}:{end_date} -> "1" marker (TTL until end_date passes)

Two backends: Redis for deployments, an in-process dict for development and
tests. The backend is picked by ``STORE_BACKEND``.
"""

from __future__ import annotations

import heapq
import logging
import time
from typing import Protocol

import redis.asyncio as redis

from fixitflow.config import settings

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal TTL store used by the billing engine."""

    async def get(self, key: str) -> str | None: ...

    async def incr(self, key: str, amount: int = 1, ttl_seconds: int | None = None) -> int: ...

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def push(self, key: str, value: str, ttl_seconds: int, max_length: int = 100) -> None: ...

    async def list(self, key: str, limit: int = 50) -> list[str]: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryStore:
    """In-process store.

    Expired entries are dropped when read and purged in deadline order on
    every write, so keys that are never read again do not accumulate.
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[object, float | None]] = {}
        self._deadlines: list[tuple[float, str]] = []

    def _live(self, key: str) -> object | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    def _set(self, key: str, value: object, expires_at: float | None) -> None:
        self._data[key] = (value, expires_at)
        if expires_at is not None:
            heapq.heappush(self._deadlines, (expires_at, key))

    def _purge(self) -> None:
        now = time.monotonic()
        while self._deadlines and self._deadlines[0][0] <= now:
            expires_at, key = heapq.heappop(self._deadlines)
            entry = self._data.get(key)
            # A rewritten key carries a later deadline of its own
            if entry is not None and entry[1] == expires_at:
                del self._data[key]

    def __len__(self) -> int:
        return len(self._data)

    @staticmethod
    def _deadline(ttl_seconds: int | None) -> float | None:
        return time.monotonic() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> str | None:
        value = self._live(key)
        return None if value is None else str(value)

    async def incr(self, key: str, amount: int = 1, ttl_seconds: int | None = None) -> int:
        self._purge()
        current = self._live(key)
        if current is None:
            new_value = amount
            self._set(key, new_value, self._deadline(ttl_seconds))
        else:
            new_value = int(current) + amount
            self._data[key] = (new_value, self._data[key][1])
        return new_value

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._purge()
        if self._live(key) is not None:
            return False
        self._set(key, value, self._deadline(ttl_seconds))
        return True

    async def push(self, key: str, value: str, ttl_seconds: int, max_length: int = 100) -> None:
        self._purge()
        items = self._live(key)
        items = [value, *(items or [])][:max_length]
        self._set(key, items, self._deadline(ttl_seconds))

    async def list(self, key: str, limit: int = 50) -> list[str]:
        items = self._live(key)
        return list(items or [])[:limit]

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        self._data.clear()
        self._deadlines.clear()


class RedisStore:
    """Redis-backed store (``redis.asyncio``)."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def incr(self, key: str, amount: int = 1, ttl_seconds: int | None = None) -> int:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incrby(key, amount)
            if ttl_seconds:
                pipe.expire(key, ttl_seconds, nx=True)
            results = await pipe.execute()
        return int(results[0])

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self._redis.set(key, value, ex=ttl_seconds, nx=True))

    async def push(self, key: str, value: str, ttl_seconds: int, max_length: int = 100) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lpush(key, value)
            pipe.ltrim(key, 0, max_length - 1)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def list(self, key: str, limit: int = 50) -> list[str]:
        return await self._redis.lrange(key, 0, limit - 1)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def close(self) -> None:
        await self._redis.aclose()


_store: KeyValueStore | None = None


def get_store() -> KeyValueStore:
    """Return the process-wide store, creating it from settings on first use."""
    global _store
    if _store is None:
        if settings.store_backend == "redis":
            logger.info("Using Redis store at %s", settings.redis_url)
            _store = RedisStore.from_url(settings.redis_url)
        else:
            _store = MemoryStore()
    return _store


def set_store(store: KeyValueStore | None) -> None:
    """Replace the process-wide store (tests, alternative backends)."""
    global _store
    _store = store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
