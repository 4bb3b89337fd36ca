from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis


def _session_key(session_token: str) -> str:
    return f"session:{session_token}"


def _user_sessions_key(user_id: str) -> str:
    return f"user_sessions:{user_id}"


def _user_key(user_id: str) -> str:
    return f"user:{user_id}"


def _decode_user(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _ttl_seconds(expires_at: datetime) -> int:
    """TTL from an absolute expiry, clamped to at least one second.

    Naive timestamps are treated as UTC. Redis rejects zero and negative TTLs.
    """

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


class RedisCache:
    """Session and account cache.

    ``session:{token}`` maps to the owner id, ``user_sessions:{id}`` tracks a
    user's cached tokens for bulk invalidation, and ``user:{id}`` holds the
    account record read on the auth path.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_session(
        self, session_token: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = _ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(_session_key(session_token), user_id, ex=ttl)
        pipe.sadd(_user_sessions_key(user_id), session_token)
        pipe.expire(_user_sessions_key(user_id), ttl)
        await pipe.execute()

    async def get_session_user(self, session_token: str) -> Optional[str]:
        return await self.client.get(_session_key(session_token))

    async def invalidate_session(
        self, session_token: str, user_id: Optional[str] = None
    ) -> None:
        pipe = self.client.pipeline()
        pipe.delete(_session_key(session_token))
        if user_id:
            pipe.srem(_user_sessions_key(user_id), session_token)
        await pipe.execute()

    async def invalidate_user_sessions(
        self, user_id: str, session_tokens: Iterable[str] = ()
    ) -> int:
        """Drop every cached session of a user.

        Tokens tracked in the user's set are removed along with any explicitly
        passed ones, so entries cached by another process are covered too.
        """
        tokens = set(session_tokens)
        tokens.update(await self.client.smembers(_user_sessions_key(user_id)))
        if not tokens:
            return 0
        pipe = self.client.pipeline()
        for token in tokens:
            pipe.delete(_session_key(token))
        pipe.delete(_user_sessions_key(user_id))
        await pipe.execute()
        return len(tokens)

    async def cache_user(self, user_id: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(_user_key(user_id), json.dumps(payload), ex=ttl_seconds)

    async def get_cached_user(self, user_id: str) -> Optional[dict]:
        return _decode_user(await self.client.get(_user_key(user_id)))

    async def invalidate_user(self, user_id: str) -> None:
        await self.client.delete(_user_key(user_id))

    async def close(self) -> None:
        """Close the connection pool on shutdown or runtime reset."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client behind the async ``RedisCache`` API.

    Used in tests so the client is not bound to any one event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def cache_session(
        self, session_token: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = _ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(_session_key(session_token), user_id, ex=ttl)
        pipe.sadd(_user_sessions_key(user_id), session_token)
        pipe.expire(_user_sessions_key(user_id), ttl)
        pipe.execute()

    async def get_session_user(self, session_token: str) -> Optional[str]:
        return self.client.get(_session_key(session_token))

    async def invalidate_session(
        self, session_token: str, user_id: Optional[str] = None
    ) -> None:
        pipe = self.client.pipeline()
        pipe.delete(_session_key(session_token))
        if user_id:
            pipe.srem(_user_sessions_key(user_id), session_token)
        pipe.execute()

    async def invalidate_user_sessions(
        self, user_id: str, session_tokens: Iterable[str] = ()
    ) -> int:
        tokens = set(session_tokens)
        tokens.update(self.client.smembers(_user_sessions_key(user_id)))
        if not tokens:
            return 0
        pipe = self.client.pipeline()
        for token in tokens:
            pipe.delete(_session_key(token))
        pipe.delete(_user_sessions_key(user_id))
        pipe.execute()
        return len(tokens)

    async def cache_user(self, user_id: str, payload: dict, ttl_seconds: int) -> None:
        self.client.set(_user_key(user_id), json.dumps(payload), ex=ttl_seconds)

    async def get_cached_user(self, user_id: str) -> Optional[dict]:
        return _decode_user(self.client.get(_user_key(user_id)))

    async def invalidate_user(self, user_id: str) -> None:
        self.client.delete(_user_key(user_id))

    async def close(self) -> None:
        self.client.close()
