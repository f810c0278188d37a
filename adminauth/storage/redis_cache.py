from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

# Atomic get-and-delete for servers or clients without GETDEL
_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


class RedisCache:
    """Thin Redis wrapper for blacklist markers and authorization codes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl_seconds or None)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key``.

        Uses GETDEL (Redis 6.2+) and falls back to a Lua script so two
        concurrent callers can never both observe the value.
        """
        try:
            return await self.client.getdel(key)
        except AttributeError:
            return await self.client.eval(_GETDEL_SCRIPT, 1, key)

    async def delete(self, key: str) -> int:
        return await self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues under
    pytest while exposing the same awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._sync_client.set(key, value, ex=ttl_seconds or None)

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(key)

    async def getdel(self, key: str) -> Optional[str]:
        try:
            return self._sync_client.getdel(key)
        except AttributeError:
            return self._sync_client.eval(_GETDEL_SCRIPT, 1, key)

    async def delete(self, key: str) -> int:
        return self._sync_client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(self._sync_client.exists(key))

    async def close(self) -> None:
        self._sync_client.close()
