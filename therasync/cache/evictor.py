"""Size-bounded evictor: keeps the cache footprint under a threshold."""

from __future__ import annotations

import logging

from therasync import config
from therasync.cache.models import CleanupReport
from therasync.cache.store import EntryStore

logger = logging.getLogger("therasync.evictor")


class SizeBoundedEvictor:
    """Evicts the least-recently-updated unobserved entries when over threshold.

    Entries with observers are never evicted, even if that leaves the cache
    over threshold; that outcome is reported, not raised.

    Usage:
        evictor = SizeBoundedEvictor(store, max_size_bytes=50 * 1024 * 1024)
        report = evictor.run_cleanup()
        cancel = evictor.start(timers)   # every cleanup_interval_ms
    """

    def __init__(
        self,
        store: EntryStore,
        max_size_bytes: int | None = None,
        threshold_ratio: float | None = None,
        cleanup_interval_ms: int | None = None,
        metrics=None,
    ):
        self.store = store
        self.max_size_bytes = max_size_bytes if max_size_bytes is not None else config.MAX_CACHE_BYTES
        ratio = threshold_ratio if threshold_ratio is not None else config.CLEANUP_THRESHOLD
        if not 0 < ratio <= 1:
            raise ValueError("threshold_ratio must be in (0, 1]")
        self.threshold_ratio = ratio
        self.cleanup_interval_ms = (
            cleanup_interval_ms
            if cleanup_interval_ms is not None
            else int(config.CLEANUP_INTERVAL * 1000)
        )
        self.metrics = metrics
        self._cancel = None

    @property
    def threshold(self) -> int:
        return int(self.max_size_bytes * self.threshold_ratio)

    def run_cleanup(self) -> CleanupReport:
        """One cleanup pass. Idempotent, synchronous, never raises on pressure."""
        threshold = self.threshold
        size_before = self.store.size_bytes()
        if size_before <= threshold:
            return CleanupReport(size_before, size_before, threshold, removed=[])

        logger.info("Cache cleanup triggered (size=%d, threshold=%d)", size_before, threshold)

        # Observer counts are read once, at the start of the sweep.
        entries = self.store.all()
        candidates = sorted(
            (e for e in entries if e.observer_count == 0),
            key=lambda e: e.fetched_at,
        )
        skipped_active = len(entries) - len(candidates)

        removed = []
        for entry in candidates:
            if self.store.size_bytes() <= threshold:
                break
            if self.store.remove(entry.key):
                removed.append(entry.key)

        report = CleanupReport(
            size_before=size_before,
            size_after=self.store.size_bytes(),
            threshold=threshold,
            removed=removed,
            skipped_active=skipped_active,
        )
        if self.metrics is not None:
            self.metrics.inc("evictions", value=len(removed))
            self.metrics.set_gauge("cache_size_bytes", report.size_after)
        logger.info(
            "Cache cleanup completed (removed=%d, size=%d)", report.removed_count, report.size_after
        )
        if report.over_threshold:
            logger.warning(
                "Cache still over threshold after cleanup (%d > %d); %d entries are in use",
                report.size_after,
                threshold,
                skipped_active,
            )
        return report

    def tick(self) -> CleanupReport | None:
        """Periodic job: TTL garbage collection, then the size pass."""
        try:
            self.store.collect_garbage()
            return self.run_cleanup()
        except Exception:
            logger.exception("Cache cleanup failed")
            return None

    def start(self, timers) -> None:
        """Schedule :meth:`tick` on *timers* every ``cleanup_interval_ms``."""
        self.stop()
        self._cancel = timers.schedule(self.cleanup_interval_ms, self.tick)

    def stop(self) -> None:
        if self._cancel is not None:
            self._cancel.cancel()
            self._cancel = None
