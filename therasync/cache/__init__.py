"""
therasync Cache — Package init.

Re-exports the entry store and the components that act on it.
"""

from therasync.cache.models import (  # noqa: F401
    CachePolicy, Entry, CacheStats, CleanupReport, estimate_size,
)
from therasync.cache.policy import POLICIES, policy_for, policy_for_key  # noqa: F401
from therasync.cache.store import EntryStore  # noqa: F401
from therasync.cache.evictor import SizeBoundedEvictor  # noqa: F401
from therasync.cache.invalidation import (  # noqa: F401
    INVALIDATION_EDGES, InvalidationEdge, InvalidationManager, Role,
)
