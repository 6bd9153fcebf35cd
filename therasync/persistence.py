"""
therasync — Snapshot Persistence.

Saves the durable subset of the client state (cached domain records, the
current filter/sort selections, the last-updated timestamp) to a local
SQLite database so it survives a restart. Loading flags, pending
optimistic updates and error flags are never written.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable, Literal

import aiosqlite
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from therasync import config
from therasync.cache.models import Entry, estimate_size
from therasync.cache.policy import policy_for
from therasync.cache.store import EntryStore
from therasync.keys import QueryKey
from therasync.temporal import Clock, SystemClock

logger = logging.getLogger("therasync.persist")

DAY_MS = 24 * 60 * 60 * 1000

SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    name        TEXT PRIMARY KEY,
    payload     TEXT NOT NULL,
    saved_at    INTEGER NOT NULL
)
"""

SENSITIVE_FIELD = re.compile(r"password|token|secret|auth|api_?key", re.IGNORECASE)


# ─── Models ──────────────────────────────────────────────────────────


class SortSpec(BaseModel):
    field: str = "sessionNumber"
    order: Literal["asc", "desc"] = "asc"


class ViewState(BaseModel):
    """Filter and sort selections that survive a restart."""
    filters: dict[str, Any] = Field(default_factory=dict)
    sort: SortSpec = Field(default_factory=SortSpec)
    selected_client_id: str | None = None


class PersistedEntry(BaseModel):
    key: list[Any]
    data: Any
    fetched_at: int
    tier: str = "session"


class Snapshot(BaseModel):
    buster: str
    saved_at: int
    last_updated: int | None = None
    view: ViewState = Field(default_factory=ViewState)
    entries: list[PersistedEntry] = Field(default_factory=list)


# ─── Helpers ─────────────────────────────────────────────────────────


def key_to_json(key: QueryKey) -> list:
    return [key_to_json(part) if isinstance(part, tuple) else part for part in key]


def key_from_json(raw: list) -> QueryKey:
    return tuple(key_from_json(part) if isinstance(part, list) else part for part in raw)


def sanitize(data: Any) -> Any:
    """Drop credential-like fields at any depth."""
    if isinstance(data, dict):
        return {
            k: sanitize(v) for k, v in data.items()
            if not SENSITIVE_FIELD.search(str(k))
        }
    if isinstance(data, list):
        return [sanitize(item) for item in data]
    return data


def build_snapshot(
    store: EntryStore,
    view: ViewState | None = None,
    last_updated: int | None = None,
    exclude: Iterable[QueryKey] = (),
    buster: str | None = None,
) -> Snapshot:
    """Capture the persistable subset of *store*."""
    skip = set(exclude)
    entries = []
    for entry in store.all():
        if entry.key in skip or entry.data is None:
            continue
        try:
            data = json.loads(json.dumps(sanitize(entry.data), default=str))
        except (TypeError, ValueError) as e:
            logger.warning("Skipping unserializable entry %s: %s", entry.key, e)
            continue
        entries.append(PersistedEntry(
            key=key_to_json(entry.key), data=data, fetched_at=entry.fetched_at, tier=entry.tier,
        ))
    return Snapshot(
        buster=buster or config.CACHE_BUSTER,
        saved_at=store.clock.now(),
        last_updated=last_updated,
        view=view or ViewState(),
        entries=entries,
    )


def hydrate_store(store: EntryStore, snapshot: Snapshot) -> int:
    """Load persisted entries into *store*. Keys already holding data win."""
    now = store.clock.now()
    loaded = 0
    for item in snapshot.entries:
        policy = policy_for(item.tier)
        fetched_at = min(item.fetched_at, now)
        entry = Entry(
            key=key_from_json(item.key),
            data=item.data,
            fetched_at=fetched_at,
            stale_at=fetched_at + policy.stale_time_ms,
            gc_at=now + policy.gc_time_ms,
            tier=policy.tier,
            size_bytes=estimate_size(item.data),
        )
        if store.hydrate(entry):
            loaded += 1
    return loaded


# ─── Store ───────────────────────────────────────────────────────────


class SnapshotStore:
    """One named snapshot row per client in a local SQLite file.

    Usage:
        snapshots = SnapshotStore("~/.therasync/cache.db")
        await snapshots.save(build_snapshot(store, view))
        snapshot = await snapshots.load()
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        name: str = "default",
        buster: str | None = None,
        max_age_days: float | None = None,
        clock: Clock | None = None,
    ):
        self.db_path = Path(db_path or config.DB_PATH).expanduser()
        self.name = name
        self.buster = buster or config.CACHE_BUSTER
        days = max_age_days if max_age_days is not None else config.PERSIST_MAX_AGE_DAYS
        self.max_age_ms = int(days * DAY_MS)
        self.clock = clock or SystemClock()

    async def _connect(self) -> aiosqlite.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self.db_path))
        await conn.execute(SCHEMA)
        await conn.commit()
        return conn

    async def save(self, snapshot: Snapshot) -> None:
        payload = snapshot.model_dump_json()
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO snapshots (name, payload, saved_at) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET payload = excluded.payload, saved_at = excluded.saved_at",
                (self.name, payload, snapshot.saved_at),
            )
            await conn.commit()
        finally:
            await conn.close()
        logger.debug("Saved snapshot %s (%d entries)", self.name, len(snapshot.entries))

    async def load(self) -> Snapshot | None:
        """Return the stored snapshot, or None if missing, outdated or corrupt."""
        if not self.db_path.exists():
            return None
        conn = await self._connect()
        try:
            async with conn.execute(
                "SELECT payload FROM snapshots WHERE name = ?", (self.name,)
            ) as cursor:
                row = await cursor.fetchone()
        finally:
            await conn.close()
        if row is None:
            return None

        try:
            snapshot = Snapshot.model_validate_json(row[0])
        except PydanticValidationError as e:
            logger.warning("Failed to deserialize snapshot %s: %s", self.name, e)
            await self.clear()
            return None

        if snapshot.buster != self.buster:
            logger.info("Discarding snapshot %s: version %s != %s", self.name, snapshot.buster, self.buster)
            await self.clear()
            return None
        if self.clock.now() - snapshot.saved_at > self.max_age_ms:
            logger.info("Discarding snapshot %s: older than %d ms", self.name, self.max_age_ms)
            await self.clear()
            return None
        return snapshot

    async def clear(self) -> bool:
        if not self.db_path.exists():
            return False
        conn = await self._connect()
        try:
            cursor = await conn.execute("DELETE FROM snapshots WHERE name = ?", (self.name,))
            await conn.commit()
            return cursor.rowcount > 0
        finally:
            await conn.close()
