"""Tests for the token-bucket rate limiter."""

import asyncio

import pytest

from adsync.platforms.exceptions import RateLimitedError
from adsync.services.resilience import RateLimiter
from adsync.settings import RateLimitPolicy, Settings
from tests.conftest import FakeClock, SleepRecorder


def _limiter(capacity=5, refill_rate=1.0, clock=None, sleep=None) -> RateLimiter:
    policy = RateLimitPolicy(capacity=capacity, refill_rate=refill_rate)
    return RateLimiter(
        lambda platform, endpoint: policy,
        clock=clock or FakeClock(),
        sleep=sleep or SleepRecorder(),
    )


@pytest.mark.asyncio
async def test_burst_up_to_capacity_then_wait():
    clock = FakeClock()
    limiter = _limiter(capacity=3, refill_rate=2.0, clock=clock)

    grants = [await limiter.admit("google", "create") for _ in range(3)]
    assert all(a.granted for a in grants)

    denied = await limiter.admit("google", "create")
    assert denied.granted is False
    # One token at 2 tokens/s
    assert denied.wait_ms == 500


@pytest.mark.asyncio
async def test_waiting_the_reported_time_is_enough():
    clock = FakeClock()
    limiter = _limiter(capacity=1, refill_rate=3.0, clock=clock)

    assert (await limiter.admit("meta", "update")).granted
    denied = await limiter.admit("meta", "update")
    assert not denied.granted

    clock.advance(denied.wait_ms / 1000)
    assert (await limiter.admit("meta", "update")).granted


@pytest.mark.asyncio
async def test_refill_never_exceeds_capacity():
    clock = FakeClock()
    limiter = _limiter(capacity=2, refill_rate=10.0, clock=clock)
    await limiter.admit("google", "create")

    clock.advance(3600)
    assert (await limiter.admit("google", "create")).granted
    assert (await limiter.admit("google", "create")).granted
    assert not (await limiter.admit("google", "create")).granted


@pytest.mark.asyncio
async def test_buckets_are_per_platform_and_endpoint():
    limiter = _limiter(capacity=1)
    assert (await limiter.admit("google", "create")).granted
    assert (await limiter.admit("google", "update")).granted
    assert (await limiter.admit("meta", "create")).granted
    assert not (await limiter.admit("google", "create")).granted


@pytest.mark.asyncio
async def test_cost_above_capacity_is_rejected():
    limiter = _limiter(capacity=2)
    with pytest.raises(ValueError):
        await limiter.admit("google", "create", cost=3)
    with pytest.raises(ValueError):
        await limiter.admit("google", "create", cost=0)


@pytest.mark.asyncio
async def test_concurrent_admissions_never_over_admit():
    limiter = _limiter(capacity=10, refill_rate=0.001)

    results = await asyncio.gather(*(limiter.admit("meta", "create") for _ in range(50)))
    assert sum(1 for r in results if r.granted) == 10


@pytest.mark.asyncio
async def test_acquire_sleeps_until_admitted():
    clock = FakeClock()
    sleep = SleepRecorder(clock)
    limiter = _limiter(capacity=1, refill_rate=4.0, clock=clock, sleep=sleep)

    assert await limiter.acquire("google", "create") == 0.0
    waited = await limiter.acquire("google", "create")
    assert waited == pytest.approx(0.25)
    assert sleep.delays == [pytest.approx(0.25)]


@pytest.mark.asyncio
async def test_acquire_fails_fast_beyond_max_wait():
    clock = FakeClock()
    sleep = SleepRecorder(clock)
    limiter = _limiter(capacity=1, refill_rate=0.1, clock=clock, sleep=sleep)

    await limiter.acquire("meta", "fetch_metrics")
    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.acquire("meta", "fetch_metrics", max_wait=1.0)

    assert exc_info.value.details["local"] is True
    assert exc_info.value.retry_after == pytest.approx(10.0)
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_policies_come_from_settings():
    cfg = Settings(
        RATE_LIMITS={
            "google": RateLimitPolicy(capacity=20, refill_rate=10),
            "google:fetch_metrics": RateLimitPolicy(capacity=2, refill_rate=1),
        }
    )
    limiter = RateLimiter(settings=cfg, clock=FakeClock())

    await limiter.admit("google", "fetch_metrics")
    await limiter.admit("google", "create")
    budgets = {(b["platform"], b["endpoint"]): b for b in limiter.snapshot()}

    assert budgets[("google", "fetch_metrics")]["capacity"] == 2
    assert budgets[("google", "create")]["capacity"] == 20
    assert budgets[("google", "create")]["tokens"] == pytest.approx(19)
