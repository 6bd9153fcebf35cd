"""Entry store: the single shared mutable table of cached query results."""

from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from typing import Any, Iterator

from therasync.cache import models
from therasync.cache.models import CachePolicy, Entry
from therasync.cache.policy import policy_for
from therasync.keys import QueryKey, matches_prefix
from therasync.temporal import Clock, SystemClock

logger = logging.getLogger("therasync.store")


class EntryStore:
    """Keyed table of cached results with issue-order write protection.

    Every write carries the issue token of the request that produced it.
    A response issued before the one already stored is dropped, so a slow
    old fetch can never overwrite a newer one.

    Usage:
        store = EntryStore()
        token = store.next_issue()
        data = await fetch(key)
        store.set(key, data, policy, issued_at=token)
    """

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._entries: dict[QueryKey, Entry] = {}
        self._pending_observers: dict[QueryKey, int] = {}
        self._issue = itertools.count(1)
        self._size = 0

    # ─── Issue tokens ─────────────────────────────────────────────

    def next_issue(self) -> int:
        """Strictly increasing token stamped on every request at issue time."""
        return next(self._issue)

    # ─── Reads ────────────────────────────────────────────────────

    def get(self, key: QueryKey) -> Entry | None:
        return self._entries.get(key)

    def all(self) -> list[Entry]:
        return list(self._entries.values())

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def matching(self, prefix: QueryKey) -> list[Entry]:
        return [e for k, e in self._entries.items() if matches_prefix(k, prefix)]

    def size_bytes(self) -> int:
        return self._size

    def observer_count(self, key: QueryKey) -> int:
        entry = self._entries.get(key)
        if entry is not None:
            return entry.observer_count
        return self._pending_observers.get(key, 0)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(list(self._entries.values()))

    # ─── Writes ───────────────────────────────────────────────────

    def set(
        self,
        key: QueryKey,
        data: Any,
        policy: CachePolicy,
        issued_at: int | None = None,
    ) -> bool:
        """Store *data* for *key*. Returns False if a newer write already landed."""
        token = issued_at if issued_at is not None else self.next_issue()
        now = self.clock.now()
        current = self._entries.get(key)
        if current is None:
            observers = self._pending_observers.pop(key, 0)
            self._put(key, models.new_entry(key, data, policy, now, token, observers))
            return True
        if token < current.issued_at:
            logger.debug("Discarding late write for %s (issued %d < %d)", key, token, current.issued_at)
            return False
        self._put(key, models.with_data(current, data, policy, now, token))
        return True

    def restore(self, key: QueryKey, snapshot: Entry | None) -> None:
        """Put back a previously captured entry (or its absence).

        Current observers are kept. The restored entry gets a fresh issue
        token so requests issued before the restore cannot clobber it.
        Staleness marked since the capture survives the restore.
        """
        current = self._entries.get(key)
        if snapshot is None:
            if current is not None:
                self.remove(key)
            return
        if current is None:
            self._put(key, replace(
                snapshot,
                observer_count=self._pending_observers.pop(key, 0),
                issued_at=self.next_issue(),
            ))
            return
        self._put(key, replace(
            snapshot,
            observer_count=current.observer_count,
            issued_at=self.next_issue(),
            stale_at=min(snapshot.stale_at, current.stale_at),
            invalidated=snapshot.invalidated or current.invalidated,
        ))

    def replace_data(self, key: QueryKey, data: Any) -> bool:
        """Swap the data of an existing entry, leaving its timers and flags alone."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        self._put(key, replace(entry, data=data, size_bytes=models.estimate_size(data)))
        return True

    def hydrate(self, entry: Entry) -> bool:
        """Load an entry from a persisted snapshot unless the key already holds data."""
        if entry.key in self._entries:
            return False
        observers = self._pending_observers.pop(entry.key, 0)
        self._put(entry.key, replace(entry, observer_count=observers, issued_at=self.next_issue()))
        return True

    def touch(self, key: QueryKey, delta: int = 1) -> int:
        """Add or remove observers. Returns the new observer count."""
        entry = self._entries.get(key)
        if entry is None:
            count = max(self._pending_observers.get(key, 0) + delta, 0)
            if count:
                self._pending_observers[key] = count
            else:
                self._pending_observers.pop(key, None)
            return count
        gc_time = policy_for(entry.tier).gc_time_ms
        updated = models.with_observers(entry, entry.observer_count + delta, self.clock.now(), gc_time)
        self._put(key, updated)
        return updated.observer_count

    def mark_stale(self, key: QueryKey) -> bool:
        """Flag *key* for refetch. Returns True if the key exists."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        updated = models.mark_stale(entry, self.clock.now())
        if updated is not entry:
            self._put(key, updated)
        return True

    def set_error(self, key: QueryKey, error: str | None) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            self._put(key, models.with_error(entry, error))

    def remove(self, key: QueryKey) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._size -= entry.size_bytes
        if entry.observer_count > 0:
            self._pending_observers[key] = entry.observer_count
        return True

    def collect_garbage(self) -> list[QueryKey]:
        """Drop unobserved entries whose GC deadline has passed."""
        now = self.clock.now()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            self.remove(key)
        if expired:
            logger.debug("GC removed %d expired entries", len(expired))
        return expired

    def clear(self) -> None:
        for entry in self._entries.values():
            if entry.observer_count > 0:
                self._pending_observers[entry.key] = entry.observer_count
        self._entries.clear()
        self._size = 0

    # ─── Internal ─────────────────────────────────────────────────

    def _put(self, key: QueryKey, entry: Entry) -> None:
        old = self._entries.get(key)
        if old is not None:
            self._size -= old.size_bytes
        self._entries[key] = entry
        self._size += entry.size_bytes
