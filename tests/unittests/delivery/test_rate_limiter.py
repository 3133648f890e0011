"""Unit tests for the per-channel sliding-window limiter."""

import pytest

from feedrelay.delivery.rate_limiter import ChannelRateLimiter
from feedrelay.main.exceptions import RateLimitedError
from tests.unittests.fakes import BrokenRedis, FakeRedis


class Clock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def build_limiter(redis=None, clock=None, **kwargs) -> ChannelRateLimiter:
    return ChannelRateLimiter(
        redis=redis,
        default_limit=kwargs.pop("default_limit", 2),
        supporter_limit=kwargs.pop("supporter_limit", 3),
        window_seconds=kwargs.pop("window_seconds", 1),
        clock=clock or Clock(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_redis_window_enforces_limit():
    redis = FakeRedis()
    limiter = build_limiter(redis=redis)

    assert (await limiter.check("c1")).allowed
    assert (await limiter.check("c1")).allowed
    denied = await limiter.check("c1")

    assert not denied.allowed
    assert denied.limit == 2
    assert 0 < denied.retry_after <= 1
    assert redis.calls == 3


@pytest.mark.asyncio
async def test_window_slides():
    clock = Clock()
    limiter = build_limiter(redis=FakeRedis(), clock=clock, default_limit=1)

    assert (await limiter.check("c1")).allowed
    assert not (await limiter.check("c1")).allowed

    clock.now += 1.5
    assert (await limiter.check("c1")).allowed


@pytest.mark.asyncio
async def test_channels_are_independent():
    limiter = build_limiter(redis=FakeRedis(), default_limit=1)

    assert (await limiter.check("c1")).allowed
    assert (await limiter.check("c2")).allowed


@pytest.mark.asyncio
async def test_supporter_guilds_get_larger_budget():
    limiter = build_limiter(redis=FakeRedis(), default_limit=1, supporter_limit=3)
    limiter.set_supporter_guilds({"g-supporter"})

    results = [await limiter.check("c1", "g-supporter") for _ in range(4)]

    assert [result.allowed for result in results] == [True, True, True, False]
    assert limiter.limit_for("g-other") == 1


@pytest.mark.asyncio
async def test_assert_within_limits_raises_with_retry_after():
    limiter = build_limiter(default_limit=1)

    await limiter.assert_within_limits("c1")
    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.assert_within_limits("c1")

    assert exc_info.value.channel_id == "c1"
    assert exc_info.value.retry_after > 0


# ============================================================================
# Circuit Breaker & Local Fallback Tests
# ============================================================================


@pytest.mark.asyncio
async def test_redis_failure_opens_circuit_and_falls_back_to_local():
    redis = BrokenRedis()
    clock = Clock()
    limiter = build_limiter(redis=redis, clock=clock, default_limit=1, circuit_break_seconds=30)

    assert (await limiter.check("c1")).allowed
    assert limiter._is_circuit_open(clock.now)

    # Circuit open: local window answers without touching Redis
    assert not (await limiter.check("c1")).allowed
    assert redis.calls == 1


@pytest.mark.asyncio
async def test_circuit_closes_after_break():
    redis = BrokenRedis()
    clock = Clock()
    limiter = build_limiter(redis=redis, clock=clock, circuit_break_seconds=30)

    await limiter.check("c1")
    clock.now += 31
    await limiter.check("c1")

    assert redis.calls == 2


@pytest.mark.asyncio
async def test_local_only_limiter_never_uses_redis():
    limiter = build_limiter(redis=None, default_limit=1)

    assert (await limiter.check("c1")).allowed
    assert not (await limiter.check("c1")).allowed
