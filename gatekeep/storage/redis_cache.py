from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


# Atomic refill + consume for the per-key token bucket
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

# Check-and-increment so concurrent failures cannot all slip under the limit.
# KEYS[1] lockout flag, KEYS[2] attempt counter.
_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""


def _normalize_rate_key(key: str) -> str:
    """Hash rate keys so emails and IPs cannot inject delimiters."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _lockout_keys(scope: str, subject: str) -> Tuple[str, str]:
    digest = hashlib.sha256(subject.encode()).hexdigest()
    return f"lockout:{scope}:{digest}", f"attempts:{scope}:{digest}"


def _unpack_bucket(
    result, return_remaining: bool
) -> Union[bool, Tuple[bool, int, int]]:
    allowed, tokens, reset_after = result
    allowed_bool = bool(int(allowed))
    remaining = max(0, int(float(tokens)))
    reset_seconds = int(reset_after) if reset_after else 0
    if return_remaining:
        return (allowed_bool, remaining, reset_seconds)
    return allowed_bool


class RedisCache:
    """Redis-backed rate limiting and failed-attempt lockout."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._failure = self.client.register_script(_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async pool is not bound to a startup loop
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
        refill_rate = float(limit) / float(window_seconds)
        result = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack_bucket(result, return_remaining)

    async def check_lockout(self, scope: str, subject: str) -> bool:
        lockout_key, _ = _lockout_keys(scope, subject)
        return bool(await self.client.exists(lockout_key))

    async def record_failure(
        self,
        scope: str,
        subject: str,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
    ) -> tuple[bool, int]:
        """Record one failed attempt.

        Returns:
            Tuple of (is_now_locked_out, current_attempts). ``current_attempts``
            is -1 when the subject was already locked.
        """
        result = await self._failure(
            keys=list(_lockout_keys(scope, subject)),
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_failures(self, scope: str, subject: str) -> None:
        _, attempts_key = _lockout_keys(scope, subject)
        await self.client.delete(attempts_key)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for test mode.

    Uses a sync client internally so pytest's per-test event loops never bind
    the connection pool, but keeps the awaitable interface of ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._failure = self._sync_client.register_script(_FAILURE_SCRIPT)

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
        refill_rate = float(limit) / float(window_seconds)
        result = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack_bucket(result, return_remaining)

    async def check_lockout(self, scope: str, subject: str) -> bool:
        lockout_key, _ = _lockout_keys(scope, subject)
        return bool(self._sync_client.exists(lockout_key))

    async def record_failure(
        self,
        scope: str,
        subject: str,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
    ) -> tuple[bool, int]:
        result = self._failure(
            keys=list(_lockout_keys(scope, subject)),
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_failures(self, scope: str, subject: str) -> None:
        _, attempts_key = _lockout_keys(scope, subject)
        self._sync_client.delete(attempts_key)

    async def close(self) -> None:
        self._sync_client.close()


Cache = Union[RedisCache, SyncRedisCache]
