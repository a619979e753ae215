from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for refresh-token rotation claims and revocation markers."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def claim_refresh_rotation(self, record_id: str, ttl_seconds: int) -> bool:
        """Take the single rotation slot for a refresh record.

        Returns True for the first caller only; later callers within
        ``ttl_seconds`` get False.
        """
        acquired = await self.client.set(
            f"auth:refresh:rotating:{record_id}", "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(acquired)

    async def release_refresh_rotation(self, record_id: str) -> None:
        await self.client.delete(f"auth:refresh:rotating:{record_id}")

    async def mark_refresh_revoked(self, record_id: str, ttl_seconds: int) -> None:
        await self.client.set(
            f"auth:refresh:revoked:{record_id}", "1", ex=max(1, ttl_seconds)
        )

    async def is_refresh_revoked(self, record_id: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{record_id}"))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable methods as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def claim_refresh_rotation(self, record_id: str, ttl_seconds: int) -> bool:
        acquired = self._sync_client.set(
            f"auth:refresh:rotating:{record_id}", "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(acquired)

    async def release_refresh_rotation(self, record_id: str) -> None:
        self._sync_client.delete(f"auth:refresh:rotating:{record_id}")

    async def mark_refresh_revoked(self, record_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(
            f"auth:refresh:revoked:{record_id}", "1", ex=max(1, ttl_seconds)
        )

    async def is_refresh_revoked(self, record_id: str) -> bool:
        return bool(self._sync_client.exists(f"auth:refresh:revoked:{record_id}"))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
