"""Cancellable interval timers.

Background components never touch loop timers directly; they receive a
``TimerScheduler``. Production code uses ``AsyncioTimerScheduler``; tests
use ``VirtualTimerScheduler`` and move time with ``advance()``.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from therasync.temporal import ManualClock

logger = logging.getLogger("therasync.timers")

TimerCallback = Callable[[], Any]


class CancelToken:
    """Handle returned by ``schedule``; ``cancel()`` is idempotent."""

    def __init__(self, on_cancel: Callable[[], None] | None = None):
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class TimerScheduler(ABC):
    """Runs a callback every ``interval_ms`` until its token is cancelled."""

    @abstractmethod
    def schedule(self, interval_ms: int, fn: TimerCallback) -> CancelToken:
        ...

    @abstractmethod
    def cancel_all(self) -> None:
        ...


class AsyncioTimerScheduler(TimerScheduler):
    """Interval timers on the running asyncio loop.

    Coroutine results are run as tasks; their failures are logged and
    never stop the timer.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._handles: dict[int, asyncio.TimerHandle] = {}
        self._tokens: dict[int, CancelToken] = {}
        self._tasks: set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, interval_ms: int, fn: TimerCallback) -> CancelToken:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        loop = self._get_loop()
        timer_id = next(self._ids)
        delay = interval_ms / 1000

        def _cancel() -> None:
            handle = self._handles.pop(timer_id, None)
            if handle is not None:
                handle.cancel()
            self._tokens.pop(timer_id, None)

        token = CancelToken(_cancel)

        def _fire() -> None:
            if token.cancelled:
                return
            self._handles[timer_id] = loop.call_later(delay, _fire)
            self._run(fn)

        self._tokens[timer_id] = token
        self._handles[timer_id] = loop.call_later(delay, _fire)
        return token

    def _run(self, fn: TimerCallback) -> None:
        try:
            result = fn()
        except Exception:
            logger.exception("Timer callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Timer task failed: %s", task.exception())

    def cancel_all(self) -> None:
        for token in list(self._tokens.values()):
            token.cancel()
        for task in list(self._tasks):
            task.cancel()

    @property
    def active_count(self) -> int:
        return len(self._tokens)


class _VirtualTimer:
    __slots__ = ("interval", "fn", "due", "token")

    def __init__(self, interval: int, fn: TimerCallback, due: int):
        self.interval = interval
        self.fn = fn
        self.due = due
        self.token: CancelToken | None = None


class VirtualTimerScheduler(TimerScheduler):
    """Deterministic timers driven by a ``ManualClock``.

    Usage:
        clock = ManualClock()
        timers = VirtualTimerScheduler(clock)
        timers.schedule(60_000, refresh)
        await timers.advance(60_000)   # refresh ran once
    """

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self._timers: dict[int, _VirtualTimer] = {}
        self._ids = itertools.count(1)

    def schedule(self, interval_ms: int, fn: TimerCallback) -> CancelToken:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        timer_id = next(self._ids)
        timer = _VirtualTimer(interval_ms, fn, self.clock.now() + interval_ms)
        timer.token = CancelToken(lambda: self._timers.pop(timer_id, None))
        self._timers[timer_id] = timer
        return timer.token

    async def advance(self, ms: int) -> int:
        """Move time forward, firing every timer that falls due on the way.

        Returns the number of callbacks fired.
        """
        target = self.clock.now() + ms
        fired = 0
        while True:
            due = [(t.due, tid) for tid, t in self._timers.items() if t.due <= target]
            if not due:
                break
            when, timer_id = min(due)
            timer = self._timers[timer_id]
            self.clock.set(max(when, self.clock.now()))
            timer.due = when + timer.interval
            fired += 1
            await self._run(timer.fn)
        self.clock.set(max(target, self.clock.now()))
        return fired

    async def _run(self, fn: TimerCallback) -> None:
        try:
            result = fn()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Timer callback failed")

    def cancel_all(self) -> None:
        for timer in list(self._timers.values()):
            if timer.token is not None:
                timer.token.cancel()

    @property
    def active_count(self) -> int:
        return len(self._timers)
