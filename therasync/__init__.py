"""
therasync — Client-side data sync for the therapy practice platform.

Cache of server-fetched sessions, consultations, clients and therapists
with tiered staleness, size-bounded eviction, invalidation cascades,
background refresh, prefetching and optimistic mutations.
"""

__version__ = "2.0.0"

from therasync.client import PENDING, SyncClient  # noqa: E402
from therasync.exceptions import (  # noqa: E402
    ConflictError, NetworkError, NotFoundError, TherasyncError, ValidationError,
)

__all__ = [
    "SyncClient",
    "PENDING",
    "TherasyncError",
    "NetworkError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "__version__",
]
