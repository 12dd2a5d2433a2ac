from __future__ import annotations

import hashlib
import time
from typing import Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

KEY_PREFIX = "recipeshare"

# KEYS[1] bucket hash; ARGV now, tokens per second, capacity, cost.
# Refill and spend happen in one call so parallel requests cannot overspend.
SPEND_TOKENS_LUA = """
local bucket = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local now = tonumber(ARGV[1])
local per_second = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local tokens = tonumber(bucket[1]) or capacity
local stamp = tonumber(bucket[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - stamp) * per_second)
local allowed = 0
local wait = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  wait = math.ceil((cost - tokens) / per_second)
end
redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / per_second)))
return {allowed, math.floor(tokens), wait}
"""

# KEYS[1] lockout flag, KEYS[2] failure counter; ARGV max failures, lockout seconds.
# Returns {locked, failures}; failures is -1 when the lockout was already active.
COUNT_OTP_FAILURE_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end
local failures = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
if failures >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return {1, failures}
end
return {0, failures}
"""


def _bucket_key(key: str) -> str:
    # Hashed so caller-supplied parts such as emails cannot collide on ':'
    return f"{KEY_PREFIX}:rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _otp_keys(user_id: str) -> Tuple[str, str]:
    return f"{KEY_PREFIX}:otp:locked:{user_id}", f"{KEY_PREFIX}:otp:failures:{user_id}"


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), limit / window_seconds, limit, max(1, cost)]


def _bucket_result(
    raw: Sequence, return_remaining: bool
) -> Union[bool, Tuple[bool, int, int]]:
    allowed, remaining, wait = (int(part) for part in raw)
    if return_remaining:
        return bool(allowed), max(0, remaining), max(0, wait)
    return bool(allowed)


def _failure_result(raw: Sequence) -> Tuple[bool, int]:
    return bool(int(raw[0])), int(raw[1])


class RedisCache:
    """Async Redis access for shared rate-limit buckets and OTP lockouts."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._spend = self.client.register_script(SPEND_TOKENS_LUA)
        self._count_failure = self.client.register_script(COUNT_OTP_FAILURE_LUA)

    def verify_connection(self) -> None:
        # A throwaway sync client keeps the async pool off the startup loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        raw = await self._spend(
            keys=[_bucket_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def check_otp_lockout(self, user_id: str) -> bool:
        locked_key, _ = _otp_keys(user_id)
        return bool(await self.client.exists(locked_key))

    async def record_otp_failure(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> Tuple[bool, int]:
        """Count one failed code and start the lockout once ``max_attempts`` is reached."""
        raw = await self._count_failure(
            keys=list(_otp_keys(user_id)), args=[max_attempts, lockout_seconds]
        )
        return _failure_result(raw)

    async def clear_otp_attempts(self, user_id: str) -> None:
        await self.client.delete(_otp_keys(user_id)[1])

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Blocking client with the same awaitable surface as ``RedisCache``.

    Used under TEST_MODE, where each test may run on a new event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._spend = self.client.register_script(SPEND_TOKENS_LUA)
        self._count_failure = self.client.register_script(COUNT_OTP_FAILURE_LUA)

    def verify_connection(self) -> None:
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
        raw = self._spend(
            keys=[_bucket_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def check_otp_lockout(self, user_id: str) -> bool:
        return bool(self.client.exists(_otp_keys(user_id)[0]))

    async def record_otp_failure(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> Tuple[bool, int]:
        raw = self._count_failure(
            keys=list(_otp_keys(user_id)), args=[max_attempts, lockout_seconds]
        )
        return _failure_result(raw)

    async def clear_otp_attempts(self, user_id: str) -> None:
        self.client.delete(_otp_keys(user_id)[1])

    async def close(self) -> None:
        self.client.close()


CacheBackend = Union[RedisCache, SyncRedisCache]

__all__ = ["CacheBackend", "RedisCache", "SyncRedisCache"]
