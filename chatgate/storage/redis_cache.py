from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for quota counters and rate limits."""

    # Lua token bucket script: atomic refill + consume
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

    # Conditional reserve: used + reserved must stay below the limit (-1 = unbounded)
    _QUOTA_RESERVE_SCRIPT = """
local used = tonumber(redis.call('HGET', KEYS[1], 'used') or '0')
local reserved = tonumber(redis.call('HGET', KEYS[1], 'reserved') or '0')
local limit = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
if limit >= 0 and used + reserved >= limit then
  return {0, used, reserved}
end
reserved = redis.call('HINCRBY', KEYS[1], 'reserved', 1)
redis.call('EXPIRE', KEYS[1], ttl)
return {1, used, reserved}
"""

    _QUOTA_COMMIT_SCRIPT = """
local reserved = tonumber(redis.call('HGET', KEYS[1], 'reserved') or '0')
if reserved > 0 then
  redis.call('HINCRBY', KEYS[1], 'reserved', -1)
end
local used = redis.call('HINCRBY', KEYS[1], 'used', 1)
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
return used
"""

    _QUOTA_RELEASE_SCRIPT = """
local reserved = tonumber(redis.call('HGET', KEYS[1], 'reserved') or '0')
if reserved > 0 then
  return redis.call('HINCRBY', KEYS[1], 'reserved', -1)
end
return 0
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
        self._quota_reserve = self.client.register_script(self._QUOTA_RESERVE_SCRIPT)
        self._quota_commit = self.client.register_script(self._QUOTA_COMMIT_SCRIPT)
        self._quota_release = self.client.register_script(self._QUOTA_RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-supplied components cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using the Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def reserve_quota(
        self, key: str, limit: Optional[int], ttl_seconds: int
    ) -> Tuple[bool, int, int]:
        """Atomically reserve one slot; returns ``(allowed, used, reserved)``."""

        result = await self._quota_reserve(
            keys=[key], args=[-1 if limit is None else limit, ttl_seconds]
        )
        return (bool(int(result[0])), int(result[1]), int(result[2]))

    async def commit_quota(self, key: str, ttl_seconds: int) -> int:
        return int(await self._quota_commit(keys=[key], args=[ttl_seconds]))

    async def release_quota(self, key: str) -> int:
        return int(await self._quota_release(keys=[key], args=[]))

    async def get_quota_usage(self, key: str) -> Tuple[int, int]:
        used, reserved = await self.client.hmget(key, "used", "reserved")
        return (int(used or 0), int(reserved or 0))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache. An already-built ``client`` (for example an
    in-memory Redis double) may be passed instead of a URL.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._quota_reserve = self.client.register_script(
            RedisCache._QUOTA_RESERVE_SCRIPT
        )
        self._quota_commit = self.client.register_script(RedisCache._QUOTA_COMMIT_SCRIPT)
        self._quota_release = self.client.register_script(
            RedisCache._QUOTA_RELEASE_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def reserve_quota(
        self, key: str, limit: Optional[int], ttl_seconds: int
    ) -> Tuple[bool, int, int]:
        result = self._quota_reserve(
            keys=[key], args=[-1 if limit is None else limit, ttl_seconds]
        )
        return (bool(int(result[0])), int(result[1]), int(result[2]))

    async def commit_quota(self, key: str, ttl_seconds: int) -> int:
        return int(self._quota_commit(keys=[key], args=[ttl_seconds]))

    async def release_quota(self, key: str) -> int:
        return int(self._quota_release(keys=[key], args=[]))

    async def get_quota_usage(self, key: str) -> Tuple[int, int]:
        used, reserved = self.client.hmget(key, "used", "reserved")
        return (int(used or 0), int(reserved or 0))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
