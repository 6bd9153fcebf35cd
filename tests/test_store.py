"""Tests for the entry store: issue ordering, observers and GC."""

from dataclasses import replace

from therasync import keys
from therasync.cache.models import estimate_size
from therasync.cache.policy import POLICIES

SESSION = POLICIES["session"]
KEY = keys.client("c1")


class TestIssueOrdering:
    def test_set_then_get(self, store, clock):
        assert store.set(KEY, {"id": "c1"}, SESSION)
        entry = store.get(KEY)
        assert entry.data == {"id": "c1"}
        assert entry.fetched_at == clock.now()

    def test_late_older_response_is_discarded(self, store):
        first = store.next_issue()
        second = store.next_issue()
        assert store.set(KEY, {"v": "new"}, SESSION, issued_at=second)
        assert not store.set(KEY, {"v": "old"}, SESSION, issued_at=first)
        assert store.get(KEY).data == {"v": "new"}

    def test_in_order_completion_keeps_latest(self, store):
        first = store.next_issue()
        second = store.next_issue()
        store.set(KEY, {"v": 1}, SESSION, issued_at=first)
        store.set(KEY, {"v": 2}, SESSION, issued_at=second)
        assert store.get(KEY).data == {"v": 2}

    def test_tokens_strictly_increase(self, store):
        tokens = [store.next_issue() for _ in range(5)]
        assert tokens == sorted(set(tokens))

    def test_restore_takes_fresh_token(self, store):
        early = store.next_issue()
        store.set(KEY, {"v": 1}, SESSION)
        snapshot = store.get(KEY)
        store.set(KEY, {"v": 2}, SESSION)
        store.restore(KEY, snapshot)
        assert not store.set(KEY, {"v": "late"}, SESSION, issued_at=early)
        assert store.get(KEY).data == {"v": 1}

    def test_restore_none_removes(self, store):
        store.set(KEY, {"v": 1}, SESSION)
        store.restore(KEY, None)
        assert KEY not in store

    def test_restore_keeps_later_invalidation(self, store, clock):
        store.set(KEY, {"v": 1}, SESSION)
        snapshot = store.get(KEY)
        store.set(KEY, {"v": 2}, SESSION)
        clock.advance(1000)
        store.mark_stale(KEY)
        store.restore(KEY, snapshot)
        entry = store.get(KEY)
        assert entry.data == {"v": 1}
        assert entry.invalidated
        assert entry.is_stale(clock.now())

    def test_replace_data_keeps_timers(self, store, clock):
        store.set(KEY, [{"id": "a"}], SESSION)
        store.mark_stale(KEY)
        before = store.get(KEY)
        assert store.replace_data(KEY, [{"id": "a"}, {"id": "b"}])
        after = store.get(KEY)
        assert after.data == [{"id": "a"}, {"id": "b"}]
        assert (after.stale_at, after.invalidated, after.fetched_at) == (before.stale_at, True, before.fetched_at)
        assert store.size_bytes() == estimate_size(after.data)
        assert not store.replace_data(keys.client("missing"), [])


class TestSize:
    def test_size_tracks_writes_and_removals(self, store):
        store.set(KEY, {"id": "c1"}, SESSION)
        store.set(keys.client("c2"), {"id": "c2", "name": "x"}, SESSION)
        expected = estimate_size({"id": "c1"}) + estimate_size({"id": "c2", "name": "x"})
        assert store.size_bytes() == expected
        store.set(KEY, {"id": "c1", "more": "data"}, SESSION)
        store.remove(keys.client("c2"))
        assert store.size_bytes() == estimate_size({"id": "c1", "more": "data"})
        store.clear()
        assert store.size_bytes() == 0


class TestObservers:
    def test_touch_and_release(self, store):
        store.set(KEY, {"id": "c1"}, SESSION)
        assert store.touch(KEY) == 1
        assert store.touch(KEY) == 2
        assert store.touch(KEY, -1) == 1
        assert store.get(KEY).is_active

    def test_observer_before_entry_exists(self, store):
        assert store.touch(KEY) == 1
        assert store.observer_count(KEY) == 1
        store.set(KEY, {"id": "c1"}, SESSION)
        assert store.get(KEY).observer_count == 1

    def test_count_never_negative(self, store):
        store.set(KEY, {"id": "c1"}, SESSION)
        assert store.touch(KEY, -1) == 0

    def test_removed_entry_keeps_observers_for_refetch(self, store):
        store.set(KEY, {"id": "c1"}, SESSION)
        store.touch(KEY)
        store.remove(KEY)
        store.set(KEY, {"id": "c1"}, SESSION)
        assert store.get(KEY).observer_count == 1


class TestStaleAndGC:
    def test_mark_stale(self, store, clock):
        store.set(KEY, {"id": "c1"}, SESSION)
        assert not store.get(KEY).is_stale(clock.now())
        assert store.mark_stale(KEY)
        assert store.get(KEY).is_stale(clock.now())
        assert not store.mark_stale(keys.client("missing"))

    def test_time_based_staleness(self, store, clock):
        store.set(KEY, {"id": "c1"}, SESSION)
        clock.advance(SESSION.stale_time_ms)
        assert store.get(KEY).is_stale(clock.now())

    def test_gc_removes_only_unobserved_expired(self, store, clock):
        store.set(KEY, {"id": "c1"}, SESSION)
        store.set(keys.client("c2"), {"id": "c2"}, SESSION)
        store.touch(keys.client("c2"))
        clock.advance(SESSION.gc_time_ms)
        assert store.collect_garbage() == [KEY]
        assert keys.client("c2") in store

    def test_gc_window_counts_from_release(self, store, clock):
        store.set(KEY, {"id": "c1"}, SESSION)
        store.touch(KEY)
        clock.advance(SESSION.gc_time_ms + 1)
        store.touch(KEY, -1)
        assert store.collect_garbage() == []
        clock.advance(SESSION.gc_time_ms)
        assert store.collect_garbage() == [KEY]

    def test_set_error_keeps_data(self, store):
        store.set(KEY, {"id": "c1"}, SESSION)
        store.set_error(KEY, "offline")
        entry = store.get(KEY)
        assert entry.error == "offline"
        assert entry.data == {"id": "c1"}

    def test_hydrate_does_not_overwrite(self, store):
        store.set(KEY, {"id": "c1", "v": "live"}, SESSION)
        snapshot = store.get(KEY)
        other = replace(snapshot, data={"v": "disk"})
        assert not store.hydrate(other)
        assert store.get(KEY).data["v"] == "live"
