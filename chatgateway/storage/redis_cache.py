from __future__ import annotations

import hashlib
import time
from typing import Any, Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket hash; ARGV now, tokens per second, burst size, cost.
# Replies {allowed, level after the call, seconds until cost is affordable}.
_BURST_BUCKET_LUA = """
local bucket = KEYS[1]
local now, per_second = tonumber(ARGV[1]), tonumber(ARGV[2])
local burst, cost = tonumber(ARGV[3]), tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'level', 'stamp')
local level = tonumber(state[1]) or burst
local stamp = tonumber(state[2]) or now
level = math.min(burst, level + math.max(0, now - stamp) * per_second)

local allowed, wait = 1, 0
if level >= cost then
  level = level - cost
else
  allowed = 0
  wait = math.ceil((cost - level) / per_second)
end

redis.call('HSET', bucket, 'level', level, 'stamp', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(burst / per_second)))
return {allowed, tostring(level), wait}
"""

RateResult = Union[bool, Tuple[bool, int, int]]


def _rate_key(subject: str, scope: Optional[str]) -> str:
    # subjects embed account ids; hashing keeps them out of the keyspace
    digest = hashlib.sha256(subject.encode()).hexdigest()
    parts = ["chatgw", "rate"] + ([scope] if scope else []) + [digest]
    return ":".join(parts)


def _unpack(raw: Sequence[Any], return_remaining: bool) -> RateResult:
    allowed = int(raw[0]) == 1
    if not return_remaining:
        return allowed
    remaining = max(0, int(float(raw[1])))
    return allowed, remaining, int(raw[2] or 0)


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), limit / float(window_seconds), limit, max(1, cost)]


def _client_options(socket_timeout: float) -> dict:
    return {
        "decode_responses": True,
        "socket_timeout": socket_timeout,
        "socket_connect_timeout": socket_timeout,
    }


class RedisCache:
    """Burst limiter kept in Redis so every worker shares one bucket per account."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(redis_url, **_client_options(socket_timeout))
        self._bucket = self.client.register_script(_BURST_BUCKET_LUA)

    def verify_connection(self) -> None:
        # runs in a worker thread, so use a short-lived blocking client
        with Redis.from_url(self.redis_url, decode_responses=True) as client:
            client.ping()

    async def check_rate_limit(
        self,
        subject: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        scope: Optional[str] = None,
        cost: int = 1,
    ) -> RateResult:
        raw = await self._bucket(
            keys=[_rate_key(subject, scope)],
            args=_bucket_args(limit, window_seconds, cost),
        )
        return _unpack(raw, return_remaining)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache(RedisCache):
    """Blocking variant for TEST_MODE, where each test owns a fresh event loop."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(redis_url, **_client_options(socket_timeout))
        self._bucket = self.client.register_script(_BURST_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        subject: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        scope: Optional[str] = None,
        cost: int = 1,
    ) -> RateResult:
        raw = self._bucket(
            keys=[_rate_key(subject, scope)],
            args=_bucket_args(limit, window_seconds, cost),
        )
        return _unpack(raw, return_remaining)

    async def close(self) -> None:
        self.client.close()
