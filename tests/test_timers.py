"""Tests for cancellable timers and clocks."""

import asyncio

import pytest

from therasync.background.timers import AsyncioTimerScheduler, CancelToken
from therasync.temporal import ManualClock, ms_to_iso


class TestManualClock:
    def test_advance_and_set(self):
        clock = ManualClock(start=0)
        assert clock.advance(10) == 10
        clock.set(20)
        assert clock.now() == 20

    def test_never_goes_backwards(self):
        clock = ManualClock(start=100)
        with pytest.raises(ValueError):
            clock.set(50)
        with pytest.raises(ValueError):
            clock.advance(-1)

    def test_iso(self):
        assert ms_to_iso(0).startswith("1970-01-01T00:00:00")


class TestCancelToken:
    def test_cancel_is_idempotent(self):
        calls = []
        token = CancelToken(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert token.cancelled
        assert calls == [1]


class TestVirtualTimers:
    async def test_fires_on_interval(self, timers):
        fired = []
        timers.schedule(1000, lambda: fired.append(1))
        assert await timers.advance(999) == 0
        assert await timers.advance(1) == 1
        assert await timers.advance(3000) == 3
        assert len(fired) == 4

    async def test_fires_in_time_order(self, timers, clock):
        order = []
        timers.schedule(300, lambda: order.append(("slow", clock.now())))
        timers.schedule(100, lambda: order.append(("fast", clock.now())))
        start = clock.now()
        await timers.advance(300)
        assert [name for name, _ in order] == ["fast", "fast", "slow", "fast"]
        assert order[0][1] == start + 100

    async def test_awaits_coroutines(self, timers):
        done = []

        async def job():
            await asyncio.sleep(0)
            done.append(1)

        timers.schedule(10, job)
        await timers.advance(10)
        assert done == [1]

    async def test_cancel_stops_firing(self, timers):
        fired = []
        token = timers.schedule(10, lambda: fired.append(1))
        await timers.advance(10)
        token.cancel()
        await timers.advance(100)
        assert fired == [1]
        assert timers.active_count == 0

    async def test_failures_are_logged_not_raised(self, timers):
        def broken():
            raise RuntimeError("boom")

        timers.schedule(10, broken)
        assert await timers.advance(20) == 2

    async def test_cancel_all(self, timers):
        timers.schedule(10, lambda: None)
        timers.schedule(20, lambda: None)
        timers.cancel_all()
        assert timers.active_count == 0

    def test_rejects_non_positive_interval(self, timers):
        with pytest.raises(ValueError):
            timers.schedule(0, lambda: None)


class TestAsyncioTimers:
    async def test_repeats_until_cancelled(self):
        scheduler = AsyncioTimerScheduler()
        fired = asyncio.Event()
        count = []

        async def job():
            count.append(1)
            if len(count) >= 2:
                fired.set()

        token = scheduler.schedule(5, job)
        await asyncio.wait_for(fired.wait(), timeout=2)
        token.cancel()
        assert scheduler.active_count == 0
        await asyncio.sleep(0.01)
        seen = len(count)
        await asyncio.sleep(0.03)
        assert len(count) == seen
