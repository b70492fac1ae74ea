from __future__ import annotations

from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from mytgate.storage.common import ceil_seconds


def _millis(ttl: float) -> int:
    return max(1, int(float(ttl) * 1000))


def _remaining_seconds(pttl: int) -> Optional[int]:
    if pttl == -2:
        return None
    if pttl == -1:
        return -1
    return ceil_seconds(pttl / 1000.0)


class RedisCache:
    """Redis-backed key-value store for tokens, revocations and counters."""

    # INCR and set the window expiry only when the counter is created, so
    # later hits inside the window never extend it.
    _INCR_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local pttl = redis.call('PTTL', KEYS[1])
if count == 1 or pttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  pttl = tonumber(ARGV[1])
end
return {count, pttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_window = self.client.register_script(self._INCR_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, *, ttl: Optional[float] = None) -> None:
        if ttl is None:
            await self.client.set(key, value)
        else:
            await self.client.set(key, value, px=_millis(ttl))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def incr(self, key: str, ttl: float) -> Tuple[int, int]:
        count, pttl = await self._incr_window(keys=[key], args=[_millis(ttl)])
        return int(count), ceil_seconds(int(pttl) / 1000.0)

    async def ttl(self, key: str) -> Optional[int]:
        return _remaining_seconds(int(await self.client.pttl(key)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Redis store backed by a synchronous client.

    Used under TEST_MODE so the client is not bound to the event loop of the
    first test that touches it. Methods stay ``async`` so callers await it
    the same way as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_window = self.client.register_script(
            RedisCache._INCR_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def set(self, key: str, value: str, *, ttl: Optional[float] = None) -> None:
        if ttl is None:
            self.client.set(key, value)
        else:
            self.client.set(key, value, px=_millis(ttl))

    async def delete(self, key: str) -> None:
        self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def incr(self, key: str, ttl: float) -> Tuple[int, int]:
        count, pttl = self._incr_window(keys=[key], args=[_millis(ttl)])
        return int(count), ceil_seconds(int(pttl) / 1000.0)

    async def ttl(self, key: str) -> Optional[int]:
        return _remaining_seconds(int(self.client.pttl(key)))

    async def close(self) -> None:
        self.client.close()
