import asyncio
from datetime import datetime

import pytest

from app.assistant.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_allows_up_to_the_ceiling_then_rejects():
    """The (N+1)th request in a window is refused with remaining=0"""
    limiter = RateLimiter(max_requests=3, window_seconds=60, clock=FakeClock())

    decisions = [await limiter.check("u1") for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    assert decisions[-1].headers()["X-RateLimit-Remaining"] == "0"


@pytest.mark.asyncio
async def test_window_reset_starts_a_new_bucket():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
    await limiter.check("u1")
    await limiter.check("u1")
    assert not (await limiter.check("u1")).allowed

    clock.now += 61
    decision = await limiter.check("u1")

    assert decision.allowed
    assert decision.remaining == 1
    assert decision.reset_at == clock.now + 60


@pytest.mark.asyncio
async def test_callers_are_counted_separately():
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())

    assert (await limiter.check(1)).allowed
    assert not (await limiter.check(1)).allowed
    assert (await limiter.check(2)).allowed


@pytest.mark.asyncio
async def test_concurrent_checks_never_exceed_the_ceiling():
    limiter = RateLimiter(max_requests=10, window_seconds=60)

    decisions = await asyncio.gather(*[limiter.check("busy") for _ in range(25)])

    assert sum(1 for d in decisions if d.allowed) == 10


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_buckets():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock)
    await limiter.check("old")
    clock.now += 30
    await limiter.check("fresh")

    clock.now += 31
    removed = await limiter.sweep()

    assert removed == 1
    assert len(limiter) == 1


@pytest.mark.asyncio
async def test_reset_time_is_reported_as_iso_and_epoch():
    clock = FakeClock(1_700_000_000.0)
    limiter = RateLimiter(max_requests=1, window_seconds=3600, clock=clock)

    decision = await limiter.check("u1")

    assert decision.headers()["X-RateLimit-Reset"] == str(1_700_003_600)
    assert datetime.fromisoformat(decision.reset_at_iso).timestamp() == 1_700_003_600
