"""Tests for the in-process fixed-window limiter."""

import pytest

from conftest import FakeClock
from usersvc.service.rate_limit import RateLimiter, RateLimitPolicy


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(RateLimitPolicy("register", 3, 3600), clock=clock)


@pytest.mark.asyncio
async def test_exactly_max_requests_allowed(limiter):
    decisions = [await limiter.hit("1.2.3.4") for _ in range(4)]
    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    assert decisions[-1].limit == 3


@pytest.mark.asyncio
async def test_window_reset_reported_from_first_hit(limiter, clock):
    await limiter.hit("1.2.3.4")
    clock.advance(minutes=10)
    decision = await limiter.hit("1.2.3.4")
    assert decision.reset_seconds == 3000
    assert decision.retry_after == 3000


@pytest.mark.asyncio
async def test_counter_resets_after_window(limiter, clock):
    for _ in range(4):
        await limiter.hit("1.2.3.4")
    clock.advance(hours=1)
    decision = await limiter.hit("1.2.3.4")
    assert decision.allowed
    assert decision.remaining == 2


@pytest.mark.asyncio
async def test_keys_are_independent(limiter):
    for _ in range(3):
        await limiter.hit("1.2.3.4")
    assert not await limiter.allow("1.2.3.4")
    assert await limiter.allow("5.6.7.8")


@pytest.mark.asyncio
async def test_policies_do_not_share_counters(clock):
    register = RateLimiter(RateLimitPolicy("register", 1, 60), clock=clock)
    login = RateLimiter(RateLimitPolicy("login", 1, 60), clock=clock)
    assert await register.allow("ip")
    assert await login.allow("ip")
    assert not await register.allow("ip")
