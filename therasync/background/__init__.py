"""
therasync Background — Package init.

Re-exports timers, the refresh scheduler and the prefetcher.
"""

from therasync.background.timers import (  # noqa: F401
    CancelToken, TimerScheduler, AsyncioTimerScheduler, VirtualTimerScheduler,
)
from therasync.background.refresh import (  # noqa: F401
    REFRESH_INTERVALS, BackgroundRefreshScheduler,
)
from therasync.background.prefetch import PrefetchManager, PrefetchReport  # noqa: F401
