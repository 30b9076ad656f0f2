"""
Advisory counters and caches behind an injectable store.

``MemoryCounterStore`` lives in process memory: it is an optimisation only,
may be cold on any invocation and is lost on restart. Limits that must hold
across processes use ``RedisCounterStore``.
"""

import time
from typing import Optional, Protocol

import redis
import redis.asyncio

from Mail_Router.mr_shared import config
from Mail_Router.mr_shared.errors import RateLimitedError, StoreUnavailableError


class CounterStore(Protocol):
    async def incr(self, key: str, window_seconds: int) -> int: ...

    async def get_value(self, key: str) -> Optional[str]: ...

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None: ...


class MemoryCounterStore:
    def __init__(self):
        self._values: dict[str, tuple[object, float]] = {}

    def _live(self, key: str):
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.time():
            del self._values[key]
            return None
        return entry

    async def incr(self, key: str, window_seconds: int) -> int:
        entry = self._live(key)
        if entry is None:
            self._values[key] = (1, time.time() + window_seconds)
            return 1
        count, expires_at = entry
        self._values[key] = (int(count) + 1, expires_at)
        return int(count) + 1

    async def get_value(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return None if entry is None else str(entry[0])

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        self._values[key] = (value, time.time() + ttl_seconds)

    def clear(self) -> None:
        self._values.clear()


class RedisCounterStore:
    def __init__(self, client: redis.asyncio.Redis):
        self.db = client

    async def incr(self, key: str, window_seconds: int) -> int:
        try:
            count = await self.db.incr(key)
            if count == 1:
                await self.db.expire(key, window_seconds)
            return int(count)
        except redis.exceptions.ConnectionError:
            raise StoreUnavailableError("counter_incr")

    async def get_value(self, key: str) -> Optional[str]:
        try:
            value = await self.db.get(key)
        except redis.exceptions.ConnectionError:
            raise StoreUnavailableError("counter_get")
        return value.decode() if value is not None else None

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.db.set(key, value, ex=ttl_seconds)
        except redis.exceptions.ConnectionError:
            raise StoreUnavailableError("counter_set")


class RateLimiter:
    """Fixed-window limiter: at most ``limit`` hits per key per window."""

    def __init__(self, store: CounterStore, scope: str, limit: int, window_seconds: int):
        self.store = store
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds

    def _key(self, key: str) -> str:
        return f"{config.RATE_LIMIT_PREFIX}:{self.scope}:{key}"

    async def hit(self, key: str) -> int:
        count = await self.store.incr(self._key(key), self.window_seconds)
        if count > self.limit:
            raise RateLimitedError(self.scope, key, self.limit)
        return count


class TokenCache:
    """Holds a bearer token until shortly before it expires."""

    def __init__(self, store: CounterStore, name: str, skew_seconds: int = 60):
        self.store = store
        self.name = name
        self.skew_seconds = skew_seconds

    def _key(self) -> str:
        return f"token-cache:{self.name}"

    async def get(self) -> Optional[str]:
        return await self.store.get_value(self._key())

    async def put(self, token: str, expires_in: int) -> None:
        ttl = max(1, expires_in - self.skew_seconds)
        await self.store.set_value(self._key(), token, ttl)
