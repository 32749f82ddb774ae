from __future__ import annotations

import fnmatch
import math
import threading
import time
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for token blacklists, sessions and rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and anchor the window TTL on the first hit, in one round trip.
    # A counter left without a TTL (e.g. EXPIRE lost) is re-anchored.
    _INCR_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 or redis.call('TTL', KEYS[1]) == -1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_window = self.client.register_script(self._INCR_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return bool(await self.client.set(key, value, ex=ex))

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        return bool(await self.client.setex(key, max(1, int(ttl_seconds)), value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    async def ttl(self, key: str) -> int:
        """Remaining seconds; -2 when missing, -1 when the key never expires."""
        return int(await self.client.ttl(key))

    async def incr_with_window(self, key: str, window_seconds: int) -> int:
        result = await self._incr_window(keys=[key], args=[int(window_seconds)])
        return int(result)

    async def scan_iter(self, match: str, count: int = 500) -> AsyncIterator[str]:
        async for key in self.client.scan_iter(match=match, count=count):
            yield key

    async def close(self) -> None:
        await self.client.aclose()


class MemoryCache:
    """In-process stand-in for ``RedisCache`` with the same coroutine API.

    Used by TEST_MODE and ALLOW_REDIS_FALLBACK_DEV. State is per process, so
    lockouts and revocations are not shared between workers. ``clock``
    returns epoch seconds and can be replaced to move time in tests.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            expires_at = self._clock() + ex if ex else None
            self._data[key] = (str(value), expires_at)
        return True

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        return await self.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def incr(self, key: str) -> int:
        with self._lock:
            return self._incr_locked(key)

    def _incr_locked(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            value, expires_at = 0, None
        else:
            value, expires_at = int(entry[0]), entry[1]
        value += 1
        self._data[key] = (str(value), expires_at)
        return value

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + ttl_seconds)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, math.ceil(entry[1] - self._clock()))

    async def incr_with_window(self, key: str, window_seconds: int) -> int:
        with self._lock:
            count = self._incr_locked(key)
            value, expires_at = self._data[key]
            if count == 1 or expires_at is None:
                self._data[key] = (value, self._clock() + window_seconds)
            return count

    async def scan_iter(self, match: str, count: int = 500) -> AsyncIterator[str]:
        with self._lock:
            keys = [key for key in list(self._data) if self._live(key) is not None]
        for key in keys:
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
