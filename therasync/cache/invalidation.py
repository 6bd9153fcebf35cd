"""Invalidation cascades: propagate a change to every dependent query key."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from therasync import keys
from therasync.cache.store import EntryStore
from therasync.keys import QueryKey

logger = logging.getLogger("therasync.invalidation")

KeyBuilder = Callable[[str], QueryKey]


@dataclass(frozen=True)
class InvalidationEdge:
    """Which keys depend on an entity class.

    ``lists`` are matched exactly (plus their filtered variants).
    ``scoped`` builders take the changed entity's id; every key under the
    built prefix is marked. ``owners`` pair a field of the changed record
    with the builder of the owner's key that lists it.
    """
    entity_class: str
    lists: tuple[QueryKey, ...]
    scoped: tuple[KeyBuilder, ...] = ()
    owners: tuple[tuple[str, KeyBuilder], ...] = field(default=())


INVALIDATION_EDGES: Mapping[str, InvalidationEdge] = MappingProxyType({
    "client": InvalidationEdge(
        "client",
        lists=(keys.clients(),),
        scoped=(keys.client, keys.client_profile, keys.client_sessions, keys.client_consultations),
    ),
    "therapist": InvalidationEdge(
        "therapist",
        lists=(keys.therapists(),),
        scoped=(
            keys.therapist,
            keys.therapist_profile,
            keys.therapist_sessions,
            keys.therapist_consultations,
            keys.therapist_availability,
        ),
    ),
    "session": InvalidationEdge(
        "session",
        lists=(keys.sessions(), keys.upcoming_sessions()),
        scoped=(keys.session,),
        owners=(("clientId", keys.client_sessions), ("therapistId", keys.therapist_sessions)),
    ),
    "consultation": InvalidationEdge(
        "consultation",
        lists=(keys.consultations(),),
        scoped=(keys.consultation,),
        owners=(
            ("clientId", keys.client_consultations),
            ("therapistId", keys.therapist_consultations),
        ),
    ),
    "clinic": InvalidationEdge(
        "clinic",
        lists=(keys.clinics(),),
        scoped=(keys.clinic, keys.clinic_profile, keys.clinic_documents, keys.clinic_analytics),
    ),
    "assignment": InvalidationEdge(
        "assignment",
        lists=(keys.assignments(),),
        scoped=(keys.assignment,),
        owners=(
            ("clientId", keys.client_assignments),
            ("therapistId", keys.therapist_assignments),
        ),
    ),
})


def _fallback_edge(entity_class: str) -> InvalidationEdge:
    """Edge for a class without a table entry: its list and its own key."""
    root = keys.ENTITY_RESOURCES.get(entity_class, entity_class)
    logger.warning("No invalidation edge for %r; marking %r only", entity_class, root)
    return InvalidationEdge(entity_class, lists=((root,),), scoped=(lambda entity_id: (root, entity_id),))


class Role(str, Enum):
    ADMINISTRATOR = "administrator"
    CLINIC_ADMIN = "clinic_admin"
    THERAPIST = "therapist"

    @classmethod
    def _missing_(cls, value: object):
        # Accept the UI spellings: "Administrator", "ClinicAdmin", "clinic-admin"
        if isinstance(value, str):
            normalized = value.replace("-", "").replace("_", "").lower()
            for member in cls:
                if member.value.replace("_", "") == normalized:
                    return member
        return None


# Prefixes each role can see; ``None`` means every key.
def _role_prefixes(role: Role, scope_id: str | None) -> list[QueryKey] | None:
    if role is Role.ADMINISTRATOR:
        return None
    if role is Role.CLINIC_ADMIN:
        if not scope_id:
            return []
        return [keys.clinic(scope_id), keys.therapists(), keys.clients()]
    return [keys.user(), keys.clients(), keys.sessions(), keys.consultations()]


class InvalidationManager:
    """Marks dependent keys stale after a change.

    Marking never removes data and never fetches; the next read (or the
    background refresher, for observed keys) does the refetch.
    """

    def __init__(self, store: EntryStore, edges: Mapping[str, InvalidationEdge] | None = None):
        self.store = store
        self.edges = edges if edges is not None else INVALIDATION_EDGES

    def keys_for(
        self,
        entity_class: str,
        entity_id: str | None = None,
        related: Mapping[str, Any] | None = None,
    ) -> list[QueryKey]:
        """Resolve the cached keys an entity change reaches."""
        edge = self.edges.get(entity_class)
        if edge is None:
            edge = _fallback_edge(entity_class)

        prefixes: list[QueryKey] = []
        if entity_id is not None:
            prefixes.extend(build(entity_id) for build in edge.scoped)
        exact: list[QueryKey] = []
        if related:
            for field_name, build in edge.owners:
                owner_id = related.get(field_name)
                if owner_id:
                    exact.append(build(str(owner_id)))

        matched = []
        for key in self.store.keys():
            if any(keys.is_list_variant(key, base) for base in edge.lists):
                matched.append(key)
            elif any(keys.matches_prefix(key, p) for p in prefixes):
                matched.append(key)
            elif any(keys.is_list_variant(key, base) for base in exact):
                matched.append(key)
        return matched

    def invalidate(
        self,
        entity_class: str,
        entity_id: str | None = None,
        related: Mapping[str, Any] | None = None,
        exclude: Iterable[QueryKey] = (),
    ) -> int:
        """Mark every key depending on *entity_class* (and *entity_id*) stale."""
        skip = set(exclude)
        marked = 0
        for key in self.keys_for(entity_class, entity_id, related):
            if key in skip:
                continue
            if self.store.mark_stale(key):
                marked += 1
        logger.debug("Invalidated %d keys for %s %s", marked, entity_class, entity_id or "*")
        return marked

    def invalidate_prefix(self, prefix: QueryKey) -> int:
        marked = 0
        for entry in self.store.matching(prefix):
            if self.store.mark_stale(entry.key):
                marked += 1
        return marked

    def invalidate_all(self) -> int:
        return self.invalidate_prefix(())

    def invalidate_by_role(self, role: Role | str, scope_id: str | None = None) -> int:
        """Coarse invalidation of everything a role can see."""
        try:
            resolved = Role(role)
        except ValueError:
            logger.warning("Unknown role %r; nothing invalidated", role)
            return 0
        prefixes = _role_prefixes(resolved, scope_id)
        if prefixes is None:
            return self.invalidate_all()
        return sum(self.invalidate_prefix(p) for p in prefixes)

    def invalidate_after_mutation(self, kind: str, entity_class: str, entity_id: str | None = None) -> int:
        """List keys always; the entity key is marked on update, dropped on delete."""
        if entity_id is not None:
            entity = keys.entity_key(entity_class, entity_id)
            if kind == "delete":
                self.store.remove(entity)
            elif kind == "update":
                self.store.mark_stale(entity)
        return self.invalidate(entity_class, entity_id)

    def remove(self, prefix: QueryKey) -> int:
        removed = 0
        for entry in self.store.matching(prefix):
            if self.store.remove(entry.key):
                removed += 1
        return removed

    def reset(self, prefix: QueryKey) -> int:
        """Drop data under *prefix*; observers stay attached for the refetch."""
        return self.remove(prefix)

    def refresh_stale(self) -> int:
        """Promote every time-stale entry to explicitly invalidated."""
        now = self.store.clock.now()
        marked = 0
        for entry in self.store.all():
            if not entry.invalidated and entry.is_stale(now):
                self.store.mark_stale(entry.key)
                marked += 1
        return marked

    def batch(self, operations: Iterable[tuple[QueryKey, str]]) -> int:
        """Apply ``(prefix, "invalidate" | "remove" | "reset")`` pairs in order."""
        handlers = {
            "invalidate": self.invalidate_prefix,
            "remove": self.remove,
            "reset": self.reset,
        }
        total = 0
        for prefix, op in operations:
            handler = handlers.get(op)
            if handler is None:
                raise ValueError(f"Unknown batch operation {op!r}")
            total += handler(prefix)
        return total
