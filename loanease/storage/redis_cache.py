from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits and attempt lockouts."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

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

    # Failed attempt counter with a sliding expiry window and lockout trigger.
    # Returns {locked, attempts}; attempts is -1 when already locked out.
    _FAILED_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
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
        self._failed_attempt = self.client.register_script(self._FAILED_ATTEMPT_SCRIPT)

    @staticmethod
    def _hash_key(prefix: str, key: str) -> str:
        """Hash caller-supplied keys so emails and IPs never land in Redis verbatim."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{prefix}:{digest}"

    @classmethod
    def _attempt_keys(cls, key: str) -> Tuple[str, str]:
        return cls._hash_key("auth:lockout", key), cls._hash_key("auth:attempts", key)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
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
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._hash_key("rate", key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def lockout_remaining(self, key: str) -> int:
        """Seconds left on an active lockout for ``key``; 0 when not locked."""

        lockout_key, _ = self._attempt_keys(key)
        ttl = await self.client.ttl(lockout_key)
        return max(0, int(ttl or 0))

    async def record_failed_attempt(
        self,
        key: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> Tuple[bool, int]:
        """Atomically record a failed attempt and trigger lockout at the threshold.

        Returns:
            Tuple of (is_now_locked_out, current_attempts)
        """

        lockout_key, attempts_key = self._attempt_keys(key)
        result = await self._failed_attempt(
            keys=[lockout_key, attempts_key],
            args=[max_attempts, window_seconds, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_attempts(self, key: str) -> None:
        """Clear attempt counter and lockout after a successful verification."""

        lockout_key, attempts_key = self._attempt_keys(key)
        await self.client.delete(lockout_key, attempts_key)

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

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)
        self._failed_attempt = self.client.register_script(RedisCache._FAILED_ATTEMPT_SCRIPT)

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
        now = time.time()
        safe_key = RedisCache._hash_key("rate", key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[now, refill_rate, limit, max(1, cost)]
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def lockout_remaining(self, key: str) -> int:
        lockout_key, _ = RedisCache._attempt_keys(key)
        ttl = self.client.ttl(lockout_key)
        return max(0, int(ttl or 0))

    async def record_failed_attempt(
        self,
        key: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> Tuple[bool, int]:
        """Atomically record a failed attempt (sync version)."""

        lockout_key, attempts_key = RedisCache._attempt_keys(key)
        result = self._failed_attempt(
            keys=[lockout_key, attempts_key],
            args=[max_attempts, window_seconds, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_attempts(self, key: str) -> None:
        lockout_key, attempts_key = RedisCache._attempt_keys(key)
        self.client.delete(lockout_key, attempts_key)

    async def close(self) -> None:
        """Close Redis connection."""

        self.client.close()
