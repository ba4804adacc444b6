"""Redis-backed fixed window rate limiter."""

from __future__ import annotations

import math
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError

from .rate_limiter import RateLimitDecision


class RedisFixedWindowRateLimiter:
    """Distributed fixed window limiter built on an atomic INCR with expiry."""

    # Returns {allowed, remaining window in ms}.
    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])

    local current = redis.call('INCR', key)
    if current == 1 then
        redis.call('PEXPIRE', key, window_ms)
    end
    local ttl = redis.call('PTTL', key)
    if ttl < 0 then
        redis.call('PEXPIRE', key, window_ms)
        ttl = window_ms
    end
    if current > max_requests then
        return {0, ttl}
    end
    return {1, ttl}
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "rate"
    ) -> None:
        """Initialise the Redis client, window configuration, and Lua script cache."""
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def check(self, key: str) -> RateLimitDecision:
        """Count one attempt against the shared counter for ``key``."""
        redis_key = self._key(key)
        try:
            allowed, ttl_ms = self._script(keys=[redis_key], args=[self._window_ms, self._max_requests])
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command `evalsha`" in message or "unknown command `eval`" in message:
                return self._check_fallback(redis_key)
            raise
        return self._decision(int(allowed) == 1, int(ttl_ms))

    def reset(self, key: str) -> None:
        self._client.delete(self._key(key))

    def _check_fallback(self, redis_key: str) -> RateLimitDecision:
        """Fallback pure-Python implementation used when Lua is unavailable."""
        current = self._client.incr(redis_key)
        if int(current) == 1:
            self._client.pexpire(redis_key, self._window_ms)
        ttl_ms = self._client.pttl(redis_key)
        if ttl_ms < 0:
            self._client.pexpire(redis_key, self._window_ms)
            ttl_ms = self._window_ms
        return self._decision(int(current) <= self._max_requests, int(ttl_ms))

    def _decision(self, allowed: bool, ttl_ms: int) -> RateLimitDecision:
        if allowed:
            return RateLimitDecision(True)
        return RateLimitDecision(False, max(1, math.ceil(ttl_ms / 1000)))
