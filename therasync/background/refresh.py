"""Background refresh: per-tier timers gated by connectivity and visibility."""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from therasync.background.timers import CancelToken, TimerScheduler
from therasync.cache.store import EntryStore
from therasync.keys import QueryKey, key_to_str

logger = logging.getLogger("therasync.refresh")

SECOND = 1000
MINUTE = 60 * SECOND

REFRESH_INTERVALS: Mapping[str, int] = MappingProxyType({
    "critical": 1 * MINUTE,
    "realtime": 2 * MINUTE,
    "session": 5 * MINUTE,
    "profile": 15 * MINUTE,
    "static": 30 * MINUTE,
})

Refetch = Callable[[QueryKey], Awaitable[Any]]


class BackgroundRefreshScheduler:
    """Refetches stale, observed entries on one timer per cache tier.

    A tick refreshes only when online, and (except for the critical tier)
    only while the page is visible. Going offline cancels every timer;
    coming back online reschedules them and refetches all stale observed
    entries at once. The page becoming visible does the same refetch.

    Usage:
        refresher = BackgroundRefreshScheduler(store, client.refetch, timers)
        refresher.start()
        await refresher.set_online(False)
    """

    def __init__(
        self,
        store: EntryStore,
        refetch: Refetch,
        timers: TimerScheduler,
        intervals: Mapping[str, int] | None = None,
        online: bool = True,
        visible: bool = True,
    ):
        self.store = store
        self.refetch = refetch
        self.timers = timers
        self.intervals = dict(intervals if intervals is not None else REFRESH_INTERVALS)
        self._online = online
        self._visible = visible
        self._running = False
        self._tokens: dict[str, CancelToken] = {}

    # ─── State ────────────────────────────────────────────────────

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_visible(self) -> bool:
        return self._visible

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scheduled_tiers(self) -> list[str]:
        return sorted(self._tokens)

    def should_refresh(self, tier: str) -> bool:
        if not self._online:
            return False
        if tier == "critical":
            return True
        return self._visible

    # ─── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        self._running = True
        if self._online:
            self._schedule_all()

    def stop(self) -> None:
        self._running = False
        self._clear_all()

    def _schedule_all(self) -> None:
        self._clear_all()
        for tier, interval in self.intervals.items():
            self._tokens[tier] = self.timers.schedule(interval, self._make_tick(tier))

    def _make_tick(self, tier: str) -> Callable[[], Awaitable[int]]:
        async def _tick() -> int:
            return await self.tick(tier)
        return _tick

    def _clear_all(self) -> None:
        for token in self._tokens.values():
            token.cancel()
        self._tokens.clear()

    # ─── Signals ──────────────────────────────────────────────────

    async def set_online(self, online: bool) -> int:
        """Connectivity change. Returns the number of entries refetched."""
        if online == self._online:
            return 0
        self._online = online
        if not online:
            self._clear_all()
            logger.info("Background refresh paused - offline")
            return 0
        if self._running:
            self._schedule_all()
        logger.info("Background refresh resumed - online")
        return await self.refresh_stale_active()

    async def set_visible(self, visible: bool) -> int:
        """Visibility change. Returns the number of entries refetched."""
        was_visible = self._visible
        self._visible = visible
        if visible and not was_visible and self._online:
            logger.info("Page visible - refreshing stale queries")
            return await self.refresh_stale_active()
        return 0

    # ─── Refresh ──────────────────────────────────────────────────

    async def tick(self, tier: str) -> int:
        """One timer firing for *tier*."""
        if not self.should_refresh(tier):
            return 0
        now = self.store.clock.now()
        targets = [
            e.key for e in self.store.all()
            if e.is_active and e.tier == tier and e.is_stale(now)
        ]
        return await self._refetch_many(targets)

    async def refresh_stale_active(self) -> int:
        """Refetch every stale entry that has observers, whatever its tier."""
        now = self.store.clock.now()
        targets = [e.key for e in self.store.all() if e.is_active and e.is_stale(now)]
        return await self._refetch_many(targets)

    async def _refetch_many(self, targets: list[QueryKey]) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self.refetch(key) for key in targets), return_exceptions=True
        )
        refreshed = 0
        for key, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("Background refresh of %s failed: %s", key_to_str(key), result)
            else:
                refreshed += 1
        return refreshed
