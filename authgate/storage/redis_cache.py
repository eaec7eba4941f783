from __future__ import annotations

from typing import List, Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for session, revocation and OAuth handoff keys."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client=None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _clamp_ttl(ttl_seconds: int) -> int:
        # Redis rejects zero or negative expiries
        return max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=self._clamp_ttl(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key) or 0)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and remove a key so only one caller consumes it."""
        return await self.client.getdel(key)

    async def keys(self, pattern: str) -> List[str]:
        # SCAN instead of KEYS so large keyspaces do not block the server
        return [key async for key in self.client.scan_iter(match=pattern, count=100)]

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
