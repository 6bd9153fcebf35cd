"""
therasync — Sync Client.

Facade that wires the entry store, evictor, invalidation manager,
background refresher, prefetcher and mutation coordinator around two
injected collaborators: ``fetcher(key)`` and ``mutator(request)``.

Usage:
    async with HttpTransport() as transport:
        async with SyncClient(transport.fetch, transport.mutate) as client:
            sessions = await client.read(keys.client_sessions("client-42"))
            with client.observe(keys.client("client-42")):
                await client.mutate("update", "client-42", {"progress": 80},
                                    entity_class="client")
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterable, Iterator, Mapping

from therasync import config
from therasync.background.prefetch import PrefetchManager, PrefetchReport
from therasync.background.refresh import BackgroundRefreshScheduler
from therasync.background.timers import AsyncioTimerScheduler, CancelToken, TimerScheduler
from therasync.cache.evictor import SizeBoundedEvictor
from therasync.cache.invalidation import InvalidationManager, Role
from therasync.cache.models import CachePolicy, CacheStats, CleanupReport
from therasync.cache.policy import resolve
from therasync.cache.store import EntryStore
from therasync.exceptions import NotFoundError, TherasyncError, classify_error
from therasync.keys import QueryKey, key_to_str
from therasync.metrics import MetricsRegistry
from therasync.mutations.coordinator import OptimisticMutationCoordinator
from therasync.mutations.models import MutationKind, MutationRequest
from therasync.persistence import SnapshotStore, SortSpec, ViewState, build_snapshot, hydrate_store
from therasync.temporal import Clock, SystemClock

__all__ = ["PENDING", "SyncClient"]

logger = logging.getLogger("therasync")

Fetcher = Callable[[QueryKey], Awaitable[Any]]
Mutator = Callable[[MutationRequest], Awaitable[Any]]
PolicyOverride = CachePolicy | str | None


class _Pending:
    """Returned by ``read_nowait`` while a key has no data yet."""

    def __repr__(self) -> str:
        return "PENDING"

    def __bool__(self) -> bool:
        return False


PENDING = _Pending()


class SyncClient:
    """Client-resident cache of server records with optimistic writes.

    Args:
        fetcher: ``async fetcher(key) -> data``; idempotent read.
        mutator: ``async mutator(MutationRequest) -> record``.
        clock: millisecond clock (``ManualClock`` in tests).
        timers: interval scheduler for cleanup, refresh and autosave.
        snapshots: optional ``SnapshotStore`` for ``persist``/``restore``.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        mutator: Mutator | None = None,
        *,
        clock: Clock | None = None,
        timers: TimerScheduler | None = None,
        store: EntryStore | None = None,
        metrics: MetricsRegistry | None = None,
        snapshots: SnapshotStore | None = None,
        max_size_bytes: int | None = None,
        threshold_ratio: float | None = None,
        cleanup_interval_ms: int | None = None,
        refresh_intervals: Mapping[str, int] | None = None,
        retries: int | None = None,
        retry_base_delay: float | None = None,
        retry_max_delay: float | None = None,
        retry_jitter: float | None = None,
        online: bool = True,
        visible: bool = True,
    ):
        self.fetcher = fetcher
        self.mutator = mutator
        self.clock = clock or SystemClock()
        self.timers = timers or AsyncioTimerScheduler()
        self.store = store or EntryStore(self.clock)
        self.metrics = metrics or MetricsRegistry()
        self.snapshots = snapshots

        self.retries = retries if retries is not None else config.READ_RETRIES
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else config.RETRY_BASE_DELAY
        self.retry_max_delay = retry_max_delay if retry_max_delay is not None else config.RETRY_MAX_DELAY
        self.retry_jitter = retry_jitter if retry_jitter is not None else config.RETRY_JITTER

        self.evictor = SizeBoundedEvictor(
            self.store,
            max_size_bytes=max_size_bytes,
            threshold_ratio=threshold_ratio,
            cleanup_interval_ms=cleanup_interval_ms,
            metrics=self.metrics,
        )
        self.invalidation = InvalidationManager(self.store)
        self.refresher = BackgroundRefreshScheduler(
            self.store, self.refetch, self.timers, refresh_intervals, online=online, visible=visible,
        )
        self.prefetcher = PrefetchManager(self, metrics=self.metrics)
        self.mutations = OptimisticMutationCoordinator(
            self.store, self.invalidation, self._send_mutation, metrics=self.metrics,
        )

        self.view = ViewState()
        self.last_updated: int | None = None
        self._inflight: dict[QueryKey, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._autosave: CancelToken | None = None
        self._dirty = False

    # ─── Reads ────────────────────────────────────────────────────

    async def read(self, key: QueryKey, policy_override: PolicyOverride = None) -> Any:
        """Cached data when fresh; otherwise fetch, store and return it.

        Concurrent reads of the same key share one request. On failure the
        previously cached data stays in place with its error flag set, and
        the typed error is raised.
        """
        entry = self.store.get(key)
        if entry is not None and not entry.is_stale(self.clock.now()):
            self.metrics.inc("cache_hits")
            return entry.data
        self.metrics.inc("cache_misses")
        return await self._shared_fetch(key, resolve(key, policy_override))

    def read_nowait(self, key: QueryKey, policy_override: PolicyOverride = None) -> Any:
        """Never suspends: returns cached data (fresh or stale) or ``PENDING``.

        A miss or stale entry starts a background fetch.
        """
        entry = self.store.get(key)
        now = self.clock.now()
        if entry is not None and not entry.is_stale(now):
            self.metrics.inc("cache_hits")
            return entry.data
        self.metrics.inc("cache_misses")
        self._spawn(self._shared_fetch(key, resolve(key, policy_override)))
        return entry.data if entry is not None else PENDING

    async def fetch_query(self, key: QueryKey, policy_override: PolicyOverride = None) -> Any:
        """Always issue a new request for *key*, bypassing freshness."""
        return await self._fetch_with_retry(key, resolve(key, policy_override))

    async def refetch(self, key: QueryKey) -> Any:
        """Refetch *key* under the tier it is cached with."""
        entry = self.store.get(key)
        return await self.fetch_query(key, entry.tier if entry is not None else None)

    async def prefetch(self, key: QueryKey, policy_override: PolicyOverride = None) -> bool:
        """Fetch *key* ahead of need. Returns False when fresh data is already cached."""
        entry = self.store.get(key)
        if entry is not None and not entry.is_stale(self.clock.now()):
            return False
        await self._shared_fetch(key, resolve(key, policy_override))
        return True

    def peek(self, key: QueryKey) -> Any:
        """Cached data without fetching (None when absent)."""
        entry = self.store.get(key)
        return entry.data if entry is not None else None

    def _shared_fetch(self, key: QueryKey, policy: CachePolicy) -> Awaitable[Any]:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_with_retry(key, policy))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._fetch_done(k, t))
        return asyncio.shield(task)

    def _fetch_done(self, key: QueryKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Retrieved here so a fetch nobody awaits any more is not reported as lost.
            task.exception()

    async def _fetch_with_retry(self, key: QueryKey, policy: CachePolicy) -> Any:
        retries = max(self.retries, 0)
        attempt = 0
        while True:
            token = self.store.next_issue()
            started = time.perf_counter()
            try:
                data = await self.fetcher(key)
                self.metrics.observe("fetch_seconds", time.perf_counter() - started)
                break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify_error(exc)
                # Reads retry everything except a missing resource.
                if isinstance(error, NotFoundError) or attempt >= retries:
                    self._fetch_failed(key, error)
                    if error is exc:
                        raise
                    raise error from exc
                delay = self._backoff(attempt)
                attempt += 1
                logger.info(
                    "Fetch of %s failed (%s); retry %d/%d in %.2fs",
                    key_to_str(key), error, attempt, retries, delay,
                )
                await asyncio.sleep(delay)

        if self.store.set(key, data, policy, issued_at=token):
            self.last_updated = self.clock.now()
            self._dirty = True
        current = self.store.get(key)
        return current.data if current is not None else data

    def _backoff(self, attempt: int) -> float:
        delay = min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)
        if self.retry_jitter > 0:
            delay += random.uniform(0, self.retry_jitter)
        return delay

    def _fetch_failed(self, key: QueryKey, error: TherasyncError) -> None:
        self.store.set_error(key, str(error) or type(error).__name__)
        self.metrics.inc("fetch_errors")
        logger.warning("Fetch of %s failed: %s", key_to_str(key), error)

    # ─── Observers ────────────────────────────────────────────────

    def touch(self, key: QueryKey) -> int:
        return self.store.touch(key, 1)

    def release(self, key: QueryKey) -> int:
        return self.store.touch(key, -1)

    @contextmanager
    def observe(self, key: QueryKey) -> Iterator[QueryKey]:
        """Keep *key* active (refreshed, never evicted) for the block."""
        self.touch(key)
        try:
            yield key
        finally:
            self.release(key)

    # ─── Mutations ────────────────────────────────────────────────

    async def mutate(
        self,
        kind: MutationKind | str,
        entity_id: str | None = None,
        payload: dict[str, Any] | None = None,
        *,
        entity_class: str,
    ) -> Any:
        """Optimistic write; see ``OptimisticMutationCoordinator.mutate``."""
        if self.mutator is None:
            raise RuntimeError("SyncClient was created without a mutator")
        result = await self.mutations.mutate(kind, entity_id, payload, entity_class=entity_class)
        self.last_updated = self.clock.now()
        self._dirty = True
        return result

    async def _send_mutation(self, request: MutationRequest) -> Any:
        return await self.mutator(request)

    def on_mutation_error(self, handler) -> Any:
        return self.mutations.on_error(handler)

    # ─── Invalidation ─────────────────────────────────────────────

    def invalidate(
        self,
        entity_class: str,
        entity_id: str | None = None,
        related: Mapping[str, Any] | None = None,
    ) -> int:
        return self.invalidation.invalidate(entity_class, entity_id, related)

    def invalidate_by_role(self, role: Role | str, scope_id: str | None = None) -> int:
        return self.invalidation.invalidate_by_role(role, scope_id)

    def invalidate_after_mutation(self, kind: str, entity_class: str, entity_id: str | None = None) -> int:
        return self.invalidation.invalidate_after_mutation(kind, entity_class, entity_id)

    def batch_invalidate(self, operations: Iterable[tuple[QueryKey, str]]) -> int:
        return self.invalidation.batch(operations)

    # ─── Prefetch & signals ───────────────────────────────────────

    async def on_navigate(self, entity_class: str, entity_id: str) -> PrefetchReport:
        return await self.prefetcher.on_navigate(entity_class, entity_id)

    async def warmup(self, role: Role | str | None = None, clinic_id: str | None = None) -> PrefetchReport:
        """Warm critical data, then the role's landing data."""
        report = await self.prefetcher.warmup_critical()
        if role is not None:
            extra = await self.prefetcher.warmup_for_role(role, clinic_id)
            report.issued.extend(extra.issued)
            report.succeeded += extra.succeeded
            report.failed += extra.failed
        return report

    async def set_online(self, online: bool) -> int:
        return await self.refresher.set_online(online)

    async def set_visible(self, visible: bool) -> int:
        return await self.refresher.set_visible(visible)

    # ─── Maintenance & stats ──────────────────────────────────────

    def run_cleanup(self) -> CleanupReport:
        return self.evictor.run_cleanup()

    def get_stats(self) -> CacheStats:
        now = self.clock.now()
        entries = self.store.all()
        self.metrics.set_gauge("cache_size_bytes", self.store.size_bytes())
        self.metrics.set_gauge("cache_entries", len(entries))
        return CacheStats(
            total_entries=len(entries),
            active_entries=sum(1 for e in entries if e.is_active),
            stale_entries=sum(1 for e in entries if e.is_stale(now)),
            error_entries=sum(1 for e in entries if e.error is not None),
            size_bytes=self.store.size_bytes(),
            max_size_bytes=self.evictor.max_size_bytes,
            pending_mutations=len(self.mutations.pending()),
            hit_rate=self.metrics.hit_rate(),
        )

    # ─── View state ───────────────────────────────────────────────

    def set_filters(self, **filters: Any) -> ViewState:
        merged = {**self.view.filters, **filters}
        self.view = self.view.model_copy(update={"filters": {k: v for k, v in merged.items() if v is not None}})
        self._dirty = True
        return self.view

    def clear_filters(self) -> ViewState:
        self.view = self.view.model_copy(update={"filters": {}})
        self._dirty = True
        return self.view

    def set_sort(self, field: str, order: str = "asc") -> ViewState:
        self.view = self.view.model_copy(update={"sort": SortSpec(field=field, order=order)})
        self._dirty = True
        return self.view

    def select_client(self, client_id: str | None) -> ViewState:
        self.view = self.view.model_copy(update={"selected_client_id": client_id})
        self._dirty = True
        return self.view

    # ─── Persistence ──────────────────────────────────────────────

    async def persist(self) -> int:
        """Save the durable subset. Returns the number of entries written."""
        if self.snapshots is None:
            raise RuntimeError("SyncClient was created without a snapshot store")
        pending_keys: set[QueryKey] = set()
        for update in self.mutations.pending():
            pending_keys.add(update.entity_key)
            pending_keys.update(update.list_snapshots)
        snapshot = build_snapshot(self.store, self.view, self.last_updated, exclude=pending_keys)
        await self.snapshots.save(snapshot)
        self._dirty = False
        return len(snapshot.entries)

    async def restore(self) -> int:
        """Load the saved snapshot, if any. Returns the number of entries loaded."""
        if self.snapshots is None:
            raise RuntimeError("SyncClient was created without a snapshot store")
        snapshot = await self.snapshots.load()
        if snapshot is None:
            return 0
        loaded = hydrate_store(self.store, snapshot)
        self.view = snapshot.view
        self.last_updated = snapshot.last_updated
        logger.info("Restored %d cached entries from snapshot", loaded)
        return loaded

    async def _autosave_tick(self) -> None:
        if self._dirty:
            await self.persist()

    # ─── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start periodic cleanup, background refresh and (with snapshots) autosave."""
        self.evictor.start(self.timers)
        self.refresher.start()
        if self.snapshots is not None and self._autosave is None:
            self._autosave = self.timers.schedule(
                max(int(config.PERSIST_INTERVAL * 1000), 1), self._autosave_tick
            )

    def stop(self) -> None:
        self.evictor.stop()
        self.refresher.stop()
        if self._autosave is not None:
            self._autosave.cancel()
            self._autosave = None

    async def close(self) -> None:
        """Stop timers, cancel outstanding fetches and flush the snapshot."""
        self.stop()
        pending = list(self._inflight.values()) + list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.snapshots is not None and self._dirty:
            await self.persist()

    async def __aenter__(self) -> SyncClient:
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Background fetch failed: %s", task.exception())
