from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for broker session state and rate limits.

    Keys:
    - ``session:activity:{user_id}``: ISO timestamp of last authenticated request
    - ``upstream:token:{user_id}``: JSON upstream token record (token already encrypted)
    - ``auth:reset:{token_hash}``: user id awaiting a password reset
    - ``rate:{sha256}``: token bucket state
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for Redis EX."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # Hash so user-supplied emails cannot collide through delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _reset_key(token: str) -> str:
        return f"auth:reset:{hashlib.sha256(token.encode()).hexdigest()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Consume from a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return self._rate_result(allowed, tokens, reset_after, return_remaining)

    @staticmethod
    def _rate_result(
        allowed: Any, tokens: Any, reset_after: Any, return_remaining: bool
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # session activity
    async def set_session_activity(
        self, user_id: str, at: datetime, ttl_seconds: int
    ) -> None:
        await self.client.set(f"session:activity:{user_id}", at.isoformat(), ex=ttl_seconds)

    async def get_session_activity(self, user_id: str) -> Optional[datetime]:
        value = await self.client.get(f"session:activity:{user_id}")
        if value:
            try:
                return datetime.fromisoformat(value)
            except (ValueError, TypeError):
                return None
        return None

    async def delete_session_activity(self, user_id: str) -> None:
        await self.client.delete(f"session:activity:{user_id}")

    # upstream token records
    async def set_upstream_token(
        self, user_id: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        await self.client.set(f"upstream:token:{user_id}", json.dumps(payload), ex=ttl)

    async def get_upstream_token(self, user_id: str) -> Optional[Dict[str, Any]]:
        cached = await self.client.get(f"upstream:token:{user_id}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def delete_upstream_token(self, user_id: str) -> None:
        await self.client.delete(f"upstream:token:{user_id}")

    # password reset tokens
    async def set_reset_token(self, token: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(self._reset_key(token), user_id, ex=ttl_seconds)

    async def pop_reset_token(self, token: str) -> Optional[str]:
        """Atomically consume a reset token so it cannot be replayed."""
        return await self.client.getdel(self._reset_key(token))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class _SyncClientAdapter:
    """Wraps a sync Redis client with async method signatures.

    Lets ``RedisCache`` methods ``await self.client.get(...)`` against either client.
    """

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync.getdel(key)


class SyncRedisCache(RedisCache):
    """Redis wrapper backed by a synchronous client, for tests.

    pytest drives each coroutine on a fresh event loop, which an async pool
    would stay bound to; the sync client has no loop affinity.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        return self._rate_result(allowed, tokens, reset_after, return_remaining)

    async def close(self) -> None:
        self._sync_client.close()
