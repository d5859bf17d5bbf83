from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket hash; ARGV now, capacity, window seconds. Returns 1 when a
# token was taken. Refill and take happen in one script so concurrent callers
# cannot both spend the last token.
_TAKE_TOKEN_LUA = """
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local state = redis.call('HMGET', KEYS[1], 'level', 'at')
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now
level = math.min(capacity, level + math.max(0, now - at) * capacity / window)
local granted = 0
if level >= 1 then
  level = level - 1
  granted = 1
end
redis.call('HSET', KEYS[1], 'level', level, 'at', now)
redis.call('EXPIRE', KEYS[1], math.ceil(window))
return granted
"""

# KEYS[1] lock flag, KEYS[2] failure counter; ARGV threshold, seconds.
# Returns {locked, failures}; failures is -1 when the lock already existed.
# The counter window starts at the first failure.
_COUNT_FAILURE_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end
local failures = redis.call('INCR', KEYS[2])
if failures == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end
if failures < tonumber(ARGV[1]) then
  return {0, failures}
end
redis.call('SET', KEYS[1], failures, 'EX', ARGV[2])
redis.call('DEL', KEYS[2])
return {1, failures}
"""


def _hashed(prefix: str, value: str) -> str:
    # Emails and client addresses never appear in key names
    return f"{prefix}:{hashlib.sha256(value.encode()).hexdigest()}"


def lockout_keys(subject: str) -> Tuple[str, str]:
    return _hashed("login:locked", subject), _hashed("login:failures", subject)


def _failure_result(raw) -> Tuple[bool, int]:
    # (locked by this call, failures); a lock that already existed reports -1
    failures = int(raw[1])
    return bool(int(raw[0])) and failures >= 0, failures


class RedisCache:
    """Login lockout counters and request rate buckets shared by all workers."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._take_token = self.client.register_script(_TAKE_TOKEN_LUA)
        self._count_failure = self.client.register_script(_COUNT_FAILURE_LUA)

    def verify_connection(self) -> None:
        """Ping once at startup; raises when Redis is unreachable."""
        # A throwaway sync client keeps the async pool free of the startup loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        granted = await self._take_token(
            keys=[_hashed("rate", key)], args=[time.time(), limit, window_seconds]
        )
        return bool(int(granted))

    async def check_login_lockout(self, subject: str) -> bool:
        locked_key, _ = lockout_keys(subject)
        return bool(await self.client.exists(locked_key))

    async def atomic_login_failure(
        self, subject: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        """Count one failure; True only for the call that sets the lock."""
        raw = await self._count_failure(
            keys=list(lockout_keys(subject)), args=[max_attempts, lockout_seconds]
        )
        return _failure_result(raw)

    async def clear_login_failures(self, subject: str) -> None:
        _, failures_key = lockout_keys(subject)
        await self.client.delete(failures_key)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Same API as ``RedisCache`` over a blocking client.

    Used under TEST_MODE, where every test runs its own event loop and an async
    pool would stay bound to the first one.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._take_token = self._sync_client.register_script(_TAKE_TOKEN_LUA)
        self._count_failure = self._sync_client.register_script(_COUNT_FAILURE_LUA)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        granted = self._take_token(
            keys=[_hashed("rate", key)], args=[time.time(), limit, window_seconds]
        )
        return bool(int(granted))

    async def check_login_lockout(self, subject: str) -> bool:
        locked_key, _ = lockout_keys(subject)
        return bool(self._sync_client.exists(locked_key))

    async def atomic_login_failure(
        self, subject: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        raw = self._count_failure(
            keys=list(lockout_keys(subject)), args=[max_attempts, lockout_seconds]
        )
        return _failure_result(raw)

    async def clear_login_failures(self, subject: str) -> None:
        _, failures_key = lockout_keys(subject)
        self._sync_client.delete(failures_key)

    async def close(self) -> None:
        self._sync_client.close()
