from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


def _token_key(jti: str) -> str:
    return f"auth:token:{jti}"


def _user_tokens_key(user_id: str) -> str:
    return f"auth:user_tokens:{user_id}"


class RedisCache:
    """Thin Redis wrapper caching resolved session tokens (jti -> user id)."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(ttl_seconds: int) -> int:
        # Redis rejects zero or negative expiries
        return max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_session(self, jti: str, user_id: str, ttl_seconds: int) -> None:
        ttl = self._ttl_seconds(ttl_seconds)
        pipe = self.client.pipeline()
        pipe.set(_token_key(jti), user_id, ex=ttl)
        # Track the jti under its user for bulk revocation
        pipe.sadd(_user_tokens_key(user_id), jti)
        pipe.expire(_user_tokens_key(user_id), ttl)
        await pipe.execute()

    async def get_session_user(self, jti: str) -> Optional[str]:
        return await self.client.get(_token_key(jti))

    async def revoke_session(self, jti: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(_token_key(jti))
        if user_id:
            pipe.srem(_user_tokens_key(user_id), jti)
        await pipe.execute()

    async def revoke_user_sessions(
        self, user_id: str, except_jti: Optional[str] = None
    ) -> int:
        """Drop every cached token of a user.

        Args:
            user_id: User whose tokens to drop
            except_jti: Optional token id to keep cached

        Returns:
            Number of cache entries removed
        """
        user_tokens_key = _user_tokens_key(user_id)
        jtis = await self.client.smembers(user_tokens_key)
        if not jtis:
            return 0

        revoked = 0
        pipe = self.client.pipeline()
        for jti in jtis:
            if except_jti and jti == except_jti:
                continue
            pipe.delete(_token_key(jti))
            pipe.srem(user_tokens_key, jti)
            revoked += 1
        await pipe.execute()
        return revoked

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def cache_session(self, jti: str, user_id: str, ttl_seconds: int) -> None:
        ttl = RedisCache._ttl_seconds(ttl_seconds)
        pipe = self.client.pipeline()
        pipe.set(_token_key(jti), user_id, ex=ttl)
        pipe.sadd(_user_tokens_key(user_id), jti)
        pipe.expire(_user_tokens_key(user_id), ttl)
        pipe.execute()

    async def get_session_user(self, jti: str) -> Optional[str]:
        return self.client.get(_token_key(jti))

    async def revoke_session(self, jti: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(_token_key(jti))
        if user_id:
            pipe.srem(_user_tokens_key(user_id), jti)
        pipe.execute()

    async def revoke_user_sessions(
        self, user_id: str, except_jti: Optional[str] = None
    ) -> int:
        user_tokens_key = _user_tokens_key(user_id)
        jtis = self.client.smembers(user_tokens_key)
        if not jtis:
            return 0

        revoked = 0
        pipe = self.client.pipeline()
        for jti in jtis:
            if except_jti and jti == except_jti:
                continue
            pipe.delete(_token_key(jti))
            pipe.srem(user_tokens_key, jti)
            revoked += 1
        pipe.execute()
        return revoked

    async def close(self) -> None:
        self.client.close()
