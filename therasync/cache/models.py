"""Cache data classes and pure entry transitions.

Entries are immutable; every change goes through one of the transition
functions below, which return a new ``Entry``. ``EntryStore`` is the only
place that swaps the new value in.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any

from therasync.keys import QueryKey

# ─── Policy ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CachePolicy:
    """Staleness and garbage-collection timing for one tier (milliseconds)."""
    tier: str
    stale_time_ms: int
    gc_time_ms: int

    def __post_init__(self) -> None:
        if self.stale_time_ms < 0:
            raise ValueError("stale_time_ms must be >= 0")
        if self.gc_time_ms <= self.stale_time_ms:
            raise ValueError("gc_time_ms must be greater than stale_time_ms")


# ─── Entry ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Entry:
    """One cached query result plus its bookkeeping."""
    key: QueryKey
    data: Any
    fetched_at: int
    stale_at: int
    gc_at: int
    tier: str = "session"
    observer_count: int = 0
    issued_at: int = 0
    size_bytes: int = 0
    invalidated: bool = False
    error: str | None = None

    def is_stale(self, now: int) -> bool:
        return self.invalidated or now >= self.stale_at

    def is_expired(self, now: int) -> bool:
        return self.observer_count == 0 and now >= self.gc_at

    @property
    def is_active(self) -> bool:
        return self.observer_count > 0


def estimate_size(data: Any) -> int:
    """Rough in-memory footprint: two bytes per serialized character."""
    if data is None:
        return 0
    try:
        return len(json.dumps(data, default=str)) * 2
    except (TypeError, ValueError):
        return len(repr(data)) * 2


def new_entry(
    key: QueryKey,
    data: Any,
    policy: CachePolicy,
    now: int,
    issued_at: int,
    observer_count: int = 0,
) -> Entry:
    return Entry(
        key=key,
        data=data,
        fetched_at=now,
        stale_at=now + policy.stale_time_ms,
        gc_at=now + policy.gc_time_ms,
        tier=policy.tier,
        observer_count=observer_count,
        issued_at=issued_at,
        size_bytes=estimate_size(data),
    )


def with_data(entry: Entry, data: Any, policy: CachePolicy, now: int, issued_at: int) -> Entry:
    """A successful write: fresh timers, cleared error and invalidation."""
    return replace(
        entry,
        data=data,
        fetched_at=now,
        stale_at=now + policy.stale_time_ms,
        gc_at=max(entry.gc_at, now + policy.gc_time_ms),
        tier=policy.tier,
        issued_at=issued_at,
        size_bytes=estimate_size(data),
        invalidated=False,
        error=None,
    )


def mark_stale(entry: Entry, now: int) -> Entry:
    """Flag for refetch. Staleness never decreases; repeating is a no-op."""
    if entry.invalidated and entry.stale_at <= now:
        return entry
    return replace(entry, stale_at=min(entry.stale_at, now), invalidated=True)


def extend_gc(entry: Entry, now: int, gc_time_ms: int) -> Entry:
    """Push the GC deadline to at least ``now + gc_time_ms``."""
    deadline = now + gc_time_ms
    if entry.gc_at >= deadline:
        return entry
    return replace(entry, gc_at=deadline)


def with_observers(entry: Entry, count: int, now: int, gc_time_ms: int) -> Entry:
    """Set the observer count; losing the last observer restarts the GC window."""
    count = max(count, 0)
    if count == 0 and entry.observer_count > 0:
        entry = extend_gc(entry, now, gc_time_ms)
    return replace(entry, observer_count=count)


def with_error(entry: Entry, error: str | None) -> Entry:
    return replace(entry, error=error)


# ─── Reports ─────────────────────────────────────────────────────────


@dataclass
class CleanupReport:
    """Result of one size-bounded cleanup pass."""
    size_before: int
    size_after: int
    threshold: int
    removed: list[QueryKey]
    skipped_active: int = 0

    @property
    def over_threshold(self) -> bool:
        return self.size_after > self.threshold

    @property
    def removed_count(self) -> int:
        return len(self.removed)


@dataclass
class CacheStats:
    """Point-in-time cache observability snapshot."""
    total_entries: int
    active_entries: int
    stale_entries: int
    error_entries: int
    size_bytes: int
    max_size_bytes: int
    pending_mutations: int = 0
    hit_rate: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_entries": self.total_entries,
            "active_entries": self.active_entries,
            "stale_entries": self.stale_entries,
            "error_entries": self.error_entries,
            "size_bytes": self.size_bytes,
            "max_size_bytes": self.max_size_bytes,
            "pending_mutations": self.pending_mutations,
            "hit_rate": round(self.hit_rate, 4),
        }
