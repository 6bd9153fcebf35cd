"""
therasync — Clocks.

All cache timestamps are integer milliseconds. Components take a clock
instead of calling ``time`` directly so tests can move time by hand.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int: ...


class SystemClock:
    """Wall-clock milliseconds since the epoch."""

    def now(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, ms: int) -> int:
        if ms < 0:
            raise ValueError("Time only moves forward")
        self._now += ms
        return self._now

    def set(self, ms: int) -> None:
        if ms < self._now:
            raise ValueError("Time only moves forward")
        self._now = ms


def ms_to_iso(ms: int) -> str:
    """Render a millisecond timestamp as ISO 8601 UTC."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()
