"""Tests for connectivity- and visibility-aware background refresh."""

import pytest

from therasync import keys
from therasync.background.refresh import REFRESH_INTERVALS, BackgroundRefreshScheduler
from therasync.cache.policy import POLICIES

MINUTE = 60_000


class Recorder:
    def __init__(self, store, fail=()):
        self.store = store
        self.calls = []
        self.fail = set(fail)

    async def __call__(self, key):
        self.calls.append(key)
        if key in self.fail:
            raise ConnectionError("offline")
        entry = self.store.get(key)
        self.store.set(key, {"refreshed": len(self.calls)}, POLICIES[entry.tier])


@pytest.fixture
def refetch(store):
    return Recorder(store)


@pytest.fixture
def refresher(store, refetch, timers):
    scheduler = BackgroundRefreshScheduler(store, refetch, timers)
    scheduler.start()
    yield scheduler
    scheduler.stop()


def _observed(store, key, tier):
    store.set(key, {"v": 0}, POLICIES[tier])
    store.touch(key)


class TestTicks:
    def test_one_timer_per_tier(self, refresher, timers):
        assert refresher.scheduled_tiers == sorted(REFRESH_INTERVALS)
        assert timers.active_count == len(REFRESH_INTERVALS)

    async def test_refreshes_only_stale_active_in_tier(self, store, clock, refetch, refresher, timers):
        _observed(store, keys.client_sessions("c1"), "session")
        store.set(keys.session("s1"), {"v": 0}, POLICIES["session"])  # stale but unobserved
        _observed(store, keys.user(), "profile")  # observed but still fresh at 5m

        await timers.advance(5 * MINUTE)

        assert refetch.calls == [keys.client_sessions("c1")]

    async def test_critical_refreshes_while_hidden(self, store, refetch, refresher, timers):
        _observed(store, keys.unread_notifications(), "critical")
        _observed(store, keys.notifications(), "realtime")
        await refresher.set_visible(False)

        await timers.advance(2 * MINUTE)

        assert keys.unread_notifications() in refetch.calls
        assert keys.notifications() not in refetch.calls

    async def test_failure_is_logged_and_timer_survives(self, store, timers):
        failing = Recorder(store, fail={keys.unread_notifications()})
        scheduler = BackgroundRefreshScheduler(store, failing, timers)
        scheduler.start()
        _observed(store, keys.unread_notifications(), "critical")

        await timers.advance(2 * MINUTE)

        assert failing.calls.count(keys.unread_notifications()) == 2
        scheduler.stop()


class TestConnectivity:
    async def test_offline_mid_cycle_then_online(self, store, clock, refetch, refresher, timers):
        _observed(store, keys.client_sessions("c1"), "session")
        _observed(store, keys.unread_notifications(), "critical")
        await timers.advance(30_000)

        await refresher.set_online(False)
        assert timers.active_count == 0
        await timers.advance(30 * MINUTE)
        assert refetch.calls == []

        refreshed = await refresher.set_online(True)

        assert refreshed == 2
        assert set(refetch.calls) == {keys.client_sessions("c1"), keys.unread_notifications()}
        assert refresher.scheduled_tiers == sorted(REFRESH_INTERVALS)

    async def test_online_before_start_does_not_schedule(self, store, refetch, timers):
        scheduler = BackgroundRefreshScheduler(store, refetch, timers, online=False)
        await scheduler.set_online(True)
        assert timers.active_count == 0

    async def test_repeated_signal_is_noop(self, refresher):
        assert await refresher.set_online(True) == 0


class TestVisibility:
    async def test_becoming_visible_refreshes_stale_active(self, store, clock, refetch, refresher):
        _observed(store, keys.client_sessions("c1"), "session")
        await refresher.set_visible(False)
        clock.advance(6 * MINUTE)

        assert await refresher.set_visible(True) == 1
        assert refetch.calls == [keys.client_sessions("c1")]

    async def test_visible_while_offline_does_nothing(self, store, clock, refetch, refresher):
        _observed(store, keys.client_sessions("c1"), "session")
        await refresher.set_visible(False)
        await refresher.set_online(False)
        clock.advance(6 * MINUTE)
        assert await refresher.set_visible(True) == 0
        assert refetch.calls == []

    def test_should_refresh(self, refresher):
        assert refresher.should_refresh("session")
        refresher._visible = False
        assert refresher.should_refresh("critical")
        assert not refresher.should_refresh("session")
