"""Tests for snapshot persistence (aiosqlite + pydantic)."""

import aiosqlite
import pytest

from therasync import keys
from therasync.cache.policy import POLICIES
from therasync.persistence import (
    DAY_MS,
    SnapshotStore,
    ViewState,
    build_snapshot,
    hydrate_store,
    key_from_json,
    key_to_json,
    sanitize,
)


@pytest.fixture
def snapshots(tmp_path, clock):
    return SnapshotStore(tmp_path / "nested" / "cache.db", clock=clock)


class TestHelpers:
    def test_key_round_trip_with_params(self):
        key = keys.sessions({"status": "done", "ids": ["a", "b"]})
        assert key_from_json(key_to_json(key)) == key

    def test_sanitize_drops_credentials(self):
        data = {
            "id": "u1",
            "password": "x",
            "apiKey": "k",
            "api_key": "k",
            "profile": {"authToken": "t", "name": "Ana"},
            "items": [{"clientSecret": "s", "ok": 1}],
        }
        assert sanitize(data) == {"id": "u1", "profile": {"name": "Ana"}, "items": [{"ok": 1}]}

    def test_build_snapshot_excludes_keys(self, store):
        store.set(keys.user(), {"id": "u1"}, POLICIES["profile"])
        store.set(keys.client("c1"), {"id": "c1"}, POLICIES["profile"])
        snapshot = build_snapshot(store, exclude={keys.client("c1")})
        assert [e.key for e in snapshot.entries] == [["user"]]

    def test_error_flags_and_observers_are_not_persisted(self, store, clock):
        store.set(keys.user(), {"id": "u1"}, POLICIES["profile"])
        store.touch(keys.user())
        store.set_error(keys.user(), "boom")
        snapshot = build_snapshot(store)

        target = type(store)(clock)
        hydrate_store(target, snapshot)
        entry = target.get(keys.user())
        assert entry.error is None
        assert entry.observer_count == 0

    def test_hydrate_keeps_original_staleness(self, store, clock):
        store.set(keys.session("s1"), {"id": "s1"}, POLICIES["session"])
        snapshot = build_snapshot(store)
        clock.advance(6 * 60_000)

        target = type(store)(clock)
        assert hydrate_store(target, snapshot) == 1
        entry = target.get(keys.session("s1"))
        assert entry.is_stale(clock.now())
        assert entry.gc_at == clock.now() + POLICIES["session"].gc_time_ms


class TestSnapshotStore:
    async def test_save_and_load(self, snapshots, store):
        store.set(keys.clients({"status": "active"}), [{"id": "c1"}], POLICIES["profile"])
        view = ViewState(filters={"status": "active"}, selected_client_id="c1")
        await snapshots.save(build_snapshot(store, view, last_updated=123))

        loaded = await snapshots.load()

        assert loaded.last_updated == 123
        assert loaded.view.selected_client_id == "c1"
        assert key_from_json(loaded.entries[0].key) == keys.clients({"status": "active"})

    async def test_creates_directories_lazily(self, snapshots):
        assert not snapshots.db_path.parent.exists()
        assert await snapshots.load() is None
        assert not snapshots.db_path.parent.exists()

    async def test_save_overwrites(self, snapshots, store):
        store.set(keys.user(), {"id": "u1"}, POLICIES["profile"])
        await snapshots.save(build_snapshot(store))
        store.set(keys.reports(), [], POLICIES["static"])
        await snapshots.save(build_snapshot(store))
        assert len((await snapshots.load()).entries) == 2

    async def test_version_mismatch_discards(self, tmp_path, clock, store):
        path = tmp_path / "cache.db"
        store.set(keys.user(), {"id": "u1"}, POLICIES["profile"])
        await SnapshotStore(path, buster="v1", clock=clock).save(build_snapshot(store, buster="v1"))

        assert await SnapshotStore(path, buster="v2", clock=clock).load() is None
        assert await SnapshotStore(path, buster="v1", clock=clock).load() is None

    async def test_old_snapshot_discarded(self, snapshots, store, clock):
        store.set(keys.user(), {"id": "u1"}, POLICIES["profile"])
        await snapshots.save(build_snapshot(store))
        clock.advance(7 * DAY_MS + 1)
        assert await snapshots.load() is None

    async def test_corrupt_payload_discarded(self, snapshots, store):
        await snapshots.save(build_snapshot(store))
        async with aiosqlite.connect(snapshots.db_path) as conn:
            await conn.execute("UPDATE snapshots SET payload = '{not json'")
            await conn.commit()
        assert await snapshots.load() is None

    async def test_clear(self, snapshots, store):
        assert await snapshots.clear() is False
        await snapshots.save(build_snapshot(store))
        assert await snapshots.clear() is True
        assert await snapshots.load() is None
