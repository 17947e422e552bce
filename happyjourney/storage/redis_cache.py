from __future__ import annotations

import math
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisRateLimitStore:
    """Fixed-window counters shared by every app instance through Redis."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic window check + increment. The start timestamp is kept as the
    # caller's string so fractional seconds survive the round trip.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local ttl_ms = tonumber(ARGV[3])

local start_raw = redis.call('HGET', key, 'start')
local start = tonumber(start_raw)
if start == nil or now - start >= window then
  redis.call('DEL', key)
  redis.call('HSET', key, 'count', 1, 'start', ARGV[1])
  redis.call('PEXPIRE', key, ttl_ms)
  return {1, ARGV[1]}
end

local count = redis.call('HINCRBY', key, 'count', 1)
if redis.call('PTTL', key) < 0 then
  redis.call('PEXPIRE', key, ttl_ms)
end
return {count, start_raw}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        # Sync probe so startup can fail fast without an event loop
        with Redis.from_url(
            self.redis_url,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        ) as client:
            client.ping()

    async def hit(self, key: str, now: float, window_seconds: int) -> Tuple[int, float]:
        count, started = await self._fixed_window(
            keys=[key],
            args=[repr(float(now)), window_seconds, math.ceil(window_seconds * 1000)],
        )
        return int(count), float(started)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()
