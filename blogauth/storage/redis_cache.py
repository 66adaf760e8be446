from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from blogauth.storage.errors import StorageUnavailable

_REVOKED_PREFIX = "auth:access:revoked:"


def _revoked_key(digest: str) -> str:
    return f"{_REVOKED_PREFIX}{digest}"


class RedisCache:
    """Redis-backed revocation list for access tokens.

    Keys are ``auth:access:revoked:<sha256 digest>`` and expire together with
    the token they block, so the set never outgrows the live token population.
    """

    DEFAULT_OPERATION_TIMEOUT = 0.5

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke_token(self, digest: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self.client.set(_revoked_key(digest), "1", ex=int(ttl_seconds))
        except RedisError as exc:
            raise StorageUnavailable("redis write failed", {"error": str(exc)}) from exc

    async def is_token_revoked(self, digest: str) -> bool:
        try:
            return bool(await self.client.exists(_revoked_key(digest)))
        except RedisError as exc:
            raise StorageUnavailable("redis read failed", {"error": str(exc)}) from exc

    async def close(self) -> None:
        await self.client.aclose()


class _SyncClientAdapter:
    """Wraps a sync Redis client with async method signatures."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)


class SyncRedisCache(RedisCache):
    """Revocation cache backed by a synchronous Redis client.

    Used in tests to avoid binding an async client to one event loop while
    ``asyncio.run`` creates a fresh loop per test.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()
