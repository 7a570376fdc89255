"""Sliding-window limiter and lockout guard."""

from __future__ import annotations

import asyncio

import pytest

from reelgate.security.rate_limit import LockoutGuard, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_max_plus_one_is_blocked():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    for _ in range(3):
        assert (await limiter.check("ip", window_seconds=60, max_hits=3)).ok
    blocked = await limiter.check("ip", window_seconds=60, max_hits=3)
    assert not blocked.ok
    assert blocked.retry_after > 0


@pytest.mark.asyncio
async def test_window_elapses_and_resets():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    for _ in range(3):
        await limiter.check("ip", window_seconds=60, max_hits=3)
    assert not (await limiter.check("ip", window_seconds=60, max_hits=3)).ok

    clock.now += 61
    assert (await limiter.check("ip", window_seconds=60, max_hits=3)).ok


@pytest.mark.asyncio
async def test_keys_are_independent():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    assert (await limiter.check("a", window_seconds=60, max_hits=1)).ok
    assert not (await limiter.check("a", window_seconds=60, max_hits=1)).ok
    assert (await limiter.check("b", window_seconds=60, max_hits=1)).ok


@pytest.mark.asyncio
async def test_concurrent_hits_are_not_undercounted():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    results = await asyncio.gather(*[limiter.check("burst", window_seconds=60, max_hits=10) for _ in range(50)])
    assert sum(1 for r in results if r.ok) == 10


async def _fail(guard: LockoutGuard, key: str = "alice:1.2.3.4"):
    return await guard.record_failure(key, window_seconds=600, max_failures=5, ban_seconds=600)


@pytest.mark.asyncio
async def test_lockout_after_max_failures():
    guard = LockoutGuard(clock=FakeClock())
    for _ in range(4):
        assert not (await _fail(guard)).locked
    result = await _fail(guard)
    assert result.locked
    assert result.retry_after == 600
    assert (await guard.check("alice:1.2.3.4")).locked


@pytest.mark.asyncio
async def test_failures_near_window_end_still_lock_for_full_ban():
    clock = FakeClock()
    guard = LockoutGuard(clock=clock)
    await _fail(guard)
    clock.now += 590
    for _ in range(4):
        await _fail(guard)
    assert (await guard.check("alice:1.2.3.4")).locked

    # The original window has long passed; the ban still holds.
    clock.now += 300
    assert (await guard.check("alice:1.2.3.4")).locked
    clock.now += 301
    assert not (await guard.check("alice:1.2.3.4")).locked


@pytest.mark.asyncio
async def test_old_failures_fall_out_of_window():
    clock = FakeClock()
    guard = LockoutGuard(clock=clock)
    for _ in range(4):
        await _fail(guard)
    clock.now += 601
    assert not (await _fail(guard)).locked


@pytest.mark.asyncio
async def test_success_clears_failures():
    guard = LockoutGuard(clock=FakeClock())
    for _ in range(4):
        await _fail(guard)
    await guard.clear("alice:1.2.3.4")
    for _ in range(4):
        assert not (await _fail(guard)).locked


@pytest.mark.asyncio
async def test_concurrent_failures_lock():
    guard = LockoutGuard(clock=FakeClock())
    await asyncio.gather(*[_fail(guard) for _ in range(20)])
    assert (await guard.check("alice:1.2.3.4")).locked
