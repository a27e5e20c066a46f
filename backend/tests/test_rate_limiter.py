"""
Unit tests for the sliding-window rate limiter.

Run: pytest backend/tests/test_rate_limiter.py -v
"""
from __future__ import annotations

import random
from unittest.mock import AsyncMock

import pytest

from ingest.rate_limiter import SlidingWindowRateLimiter


def _max_in_window(timestamps: list[float], width: float) -> int:
    best = 0
    for i, start in enumerate(timestamps):
        count = sum(1 for ts in timestamps[i:] if ts - start < width)
        best = max(best, count)
    return best


class TestWindowCeilings:
    @pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
    def test_random_sequences_never_exceed_either_window(self, clock, seed: int) -> None:
        rng = random.Random(seed)
        limiter = SlidingWindowRateLimiter("test", per_minute=5, per_hour=20, clock=clock)
        admitted: list[float] = []
        for _ in range(600):
            clock.advance(rng.choice([0.0, 0.5, 3.0, 11.0, 40.0, 95.0]))
            for _ in range(rng.randint(1, 4)):
                if limiter.try_acquire():
                    admitted.append(clock.monotonic())
        assert admitted
        assert _max_in_window(admitted, 60.0) <= 5
        assert _max_in_window(admitted, 3600.0) <= 20

    def test_minute_ceiling_recovers_after_sixty_seconds(self, clock) -> None:
        limiter = SlidingWindowRateLimiter("test", per_minute=3, clock=clock)
        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
        clock.advance(59.9)
        assert limiter.try_acquire() is False
        clock.advance(0.1)
        assert limiter.try_acquire() is True

    def test_hour_ceiling_holds_across_minutes(self, clock) -> None:
        limiter = SlidingWindowRateLimiter("test", per_minute=10, per_hour=12, clock=clock)
        granted = 0
        for _ in range(10):
            granted += sum(limiter.try_acquire() for _ in range(10))
            clock.advance(60)
        assert granted == 12

    def test_zero_means_unlimited(self, clock) -> None:
        limiter = SlidingWindowRateLimiter("test", per_minute=0, per_hour=0, clock=clock)
        assert all(limiter.try_acquire() for _ in range(1000))


class TestCooldown:
    def test_throttle_blocks_every_acquisition_until_cooldown_passes(self, clock) -> None:
        limiter = SlidingWindowRateLimiter("test", per_minute=100, cooldown_s=300, clock=clock)
        limiter.record_too_many_requests()
        assert limiter.in_cooldown
        assert limiter.try_acquire() is False
        assert limiter.available_slots() == 0
        clock.advance(299)
        assert limiter.try_acquire() is False
        clock.advance(1)
        assert limiter.try_acquire() is True

    def test_snapshot_reports_cooldown(self, clock) -> None:
        limiter = SlidingWindowRateLimiter("test", per_minute=10, cooldown_s=120, clock=clock)
        limiter.try_acquire()
        limiter.record_too_many_requests()
        snap = limiter.snapshot()
        assert snap["in_cooldown"] is True
        assert snap["cooldown_remaining_s"] == 120.0
        assert snap["requests_last_minute"] == 1


class TestAvailableSlots:
    def test_min_of_both_windows(self, clock) -> None:
        limiter = SlidingWindowRateLimiter("test", per_minute=10, per_hour=4, clock=clock)
        assert limiter.available_slots() == 4
        limiter.try_acquire()
        assert limiter.available_slots() == 3

    def test_acquire_does_not_block(self, clock) -> None:
        limiter = SlidingWindowRateLimiter("test", per_minute=1, clock=clock)
        limiter.try_acquire()
        # Returns immediately with an answer; time has not moved.
        assert limiter.try_acquire() is False
        assert clock.monotonic() == 10_000.0


class TestBoundedWait:
    @pytest.mark.asyncio
    async def test_waits_once_when_slot_frees_within_bound(self, clock) -> None:
        async def fake_sleep(seconds: float) -> None:
            clock.advance(seconds)

        sleep = AsyncMock(side_effect=fake_sleep)
        limiter = SlidingWindowRateLimiter("test", per_minute=1, clock=clock, sleep=sleep)
        limiter.try_acquire()
        clock.advance(55)
        assert await limiter.wait_for_slot(max_wait_s=10) is True
        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_gives_up_when_wait_exceeds_bound(self, clock) -> None:
        sleep = AsyncMock()
        limiter = SlidingWindowRateLimiter("test", per_minute=1, clock=clock, sleep=sleep)
        limiter.try_acquire()
        assert await limiter.wait_for_slot(max_wait_s=10) is False
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_never_waits_out_a_cooldown_longer_than_bound(self, clock) -> None:
        sleep = AsyncMock()
        limiter = SlidingWindowRateLimiter("test", per_minute=5, cooldown_s=300, clock=clock, sleep=sleep)
        limiter.record_too_many_requests()
        assert await limiter.wait_for_slot(max_wait_s=10) is False
        sleep.assert_not_awaited()
