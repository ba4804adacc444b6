"""Tests for the in-memory and Redis-backed fixed window rate limiters."""

from __future__ import annotations

import time

import fakeredis
import pytest

from gym_identity.security.rate_limiter import FixedWindowRateLimiter
from gym_identity.security.redis_rate_limiter import RedisFixedWindowRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def test_memory_limiter_rejects_attempt_after_limit(clock):
    limiter = FixedWindowRateLimiter(max_requests=3, window_seconds=60, clock=clock)

    assert [limiter.check("ip").allowed for _ in range(3)] == [True, True, True]
    clock.now += 15
    decision = limiter.check("ip")

    assert not decision.allowed
    assert decision.retry_after_seconds == 45


def test_memory_limiter_starts_new_window_after_expiry(clock):
    limiter = FixedWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)
    limiter.check("ip")
    limiter.check("ip")
    assert not limiter.check("ip").allowed

    clock.now += 60

    assert limiter.check("ip").allowed
    assert limiter.check("ip").allowed
    assert not limiter.check("ip").allowed


def test_memory_limiter_keys_are_independent(clock):
    limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)

    assert limiter.check("login:a").allowed
    assert limiter.check("login:b").allowed
    assert not limiter.check("login:a").allowed


def test_memory_limiter_reset_clears_counter(clock):
    limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
    limiter.check("ip")
    assert not limiter.check("ip").allowed

    limiter.reset("ip")
    limiter.reset("never-seen")

    assert limiter.check("ip").allowed


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_redis_rate_limiter_allows_within_threshold(redis_client):
    limiter = RedisFixedWindowRateLimiter(
        redis_client, max_requests=3, window_seconds=1, key_prefix="test"
    )
    key = "login:10.0.0.1"
    assert limiter.check(key).allowed
    assert limiter.check(key).allowed
    assert limiter.check(key).allowed


def test_redis_rate_limiter_blocks_excess(redis_client):
    limiter = RedisFixedWindowRateLimiter(
        redis_client, max_requests=2, window_seconds=30, key_prefix="test"
    )
    key = "login:10.0.0.1"
    assert limiter.check(key).allowed
    assert limiter.check(key).allowed
    decision = limiter.check(key)
    assert not decision.allowed
    assert 1 <= decision.retry_after_seconds <= 30


def test_redis_rate_limiter_expires_window(redis_client):
    limiter = RedisFixedWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=1, key_prefix="test"
    )
    key = "login:10.0.0.1"
    assert limiter.check(key).allowed
    assert not limiter.check(key).allowed
    time.sleep(1.1)
    assert limiter.check(key).allowed


def test_redis_rate_limiter_reset(redis_client):
    limiter = RedisFixedWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=30, key_prefix="test"
    )
    key = "register:10.0.0.1"
    assert limiter.check(key).allowed
    assert not limiter.check(key).allowed

    limiter.reset(key)

    assert limiter.check(key).allowed
