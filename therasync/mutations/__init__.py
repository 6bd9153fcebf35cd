"""
therasync Mutations — Package init.

Re-exports the optimistic mutation coordinator and its records.
"""

from therasync.mutations.models import (  # noqa: F401
    MutationKind, MutationRequest, MutationState, OptimisticUpdate,
)
from therasync.mutations.coordinator import OptimisticMutationCoordinator  # noqa: F401
