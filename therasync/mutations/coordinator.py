"""Optimistic mutation coordinator.

Each ``mutate`` call walks Idle -> Staged -> Committed | RolledBack:

1. Stage: write the tentative record into the store right away and keep an
   undo snapshot of every entry touched.
2. Invoke the mutate collaborator (one request, no retries).
3. Commit: the server record replaces the tentative one, dependent keys
   are invalidated.
4. Roll back: the entity snapshot goes back into the store, each touched
   list gets only this record reverted, and the error is raised to the
   caller. Staleness marked meanwhile is kept.

Several mutations on the same entity may be staged at once. They form a
stack per entity key; the most recently staged one owns what the store
shows ("later mutation wins").
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import replace
from typing import Any, Awaitable, Callable

from therasync import keys
from therasync.cache.invalidation import InvalidationManager
from therasync.cache.models import Entry, estimate_size
from therasync.cache.policy import policy_for, policy_for_key
from therasync.cache.store import EntryStore
from therasync.exceptions import ConflictError, NotFoundError, TherasyncError, classify_error
from therasync.keys import QueryKey
from therasync.mutations.models import (
    MutationKind,
    MutationRequest,
    MutationState,
    OptimisticUpdate,
)

logger = logging.getLogger("therasync.mutations")

Mutator = Callable[[MutationRequest], Awaitable[Any]]
ErrorHandler = Callable[[MutationRequest, TherasyncError], None]

TEMP_ID_PREFIX = "temp-"


def _record_id(record: Any) -> str | None:
    if isinstance(record, dict) and record.get("id") is not None:
        return str(record["id"])
    return None


def _patch_list(
    items: list,
    kind: MutationKind,
    entity_id: str,
    record: Any,
    append: bool,
) -> list | None:
    """Apply one record change to a cached list. None means "untouched"."""
    position = next((i for i, item in enumerate(items) if _record_id(item) == entity_id), None)
    if kind is MutationKind.DELETE:
        if position is None:
            return None
        return items[:position] + items[position + 1:]
    if position is not None:
        return items[:position] + [record] + items[position + 1:]
    if kind is MutationKind.CREATE and append:
        return items + [record]
    return None


def _revert_record(items: list, update: OptimisticUpdate, original_items: Any) -> list:
    """Put back the pre-staging version of *update*'s record inside *items*."""
    original, position = None, None
    if isinstance(original_items, list):
        for i, item in enumerate(original_items):
            if _record_id(item) == update.entity_id:
                original, position = item, i
                break
    present = any(_record_id(item) == update.entity_id for item in items)
    if update.kind is MutationKind.CREATE or (present and original is None):
        return [item for item in items if _record_id(item) != update.entity_id]
    if update.kind is MutationKind.DELETE:
        if present or original is None:
            return items
        return items[:position] + [original] + items[position:]
    return [original if _record_id(item) == update.entity_id else item for item in items]


class OptimisticMutationCoordinator:
    """Applies tentative writes and reconciles them with the server.

    Usage:
        coordinator = OptimisticMutationCoordinator(store, invalidation, transport.mutate)
        record = await coordinator.mutate("update", "client-42", {"progress": 80},
                                          entity_class="client")
    """

    def __init__(
        self,
        store: EntryStore,
        invalidation: InvalidationManager,
        mutator: Mutator,
        metrics=None,
    ):
        self.store = store
        self.invalidation = invalidation
        self.mutator = mutator
        self.metrics = metrics
        self._pending: dict[QueryKey, list[OptimisticUpdate]] = {}
        self._committed_stage: dict[QueryKey, int] = {}
        self._error_handlers: list[ErrorHandler] = []

    # ─── Public API ───────────────────────────────────────────────

    def on_error(self, handler: ErrorHandler) -> ErrorHandler:
        """Register a callback for failed mutations (UI error notifications)."""
        self._error_handlers.append(handler)
        return handler

    def pending(self) -> list[OptimisticUpdate]:
        return [u for stack in self._pending.values() for u in stack]

    def pending_for(self, entity_class: str, entity_id: str) -> list[OptimisticUpdate]:
        return list(self._pending.get(keys.entity_key(entity_class, entity_id), []))

    async def mutate(
        self,
        kind: MutationKind | str,
        entity_id: str | None,
        payload: dict[str, Any] | None = None,
        *,
        entity_class: str,
    ) -> Any:
        """Stage, invoke, then commit or roll back. Returns the server record."""
        request = MutationRequest(
            kind=MutationKind(kind),
            entity_class=entity_class,
            entity_id=entity_id,
            payload=payload or {},
        )
        update = self.stage(request)
        try:
            response = await self.mutator(request)
        except asyncio.CancelledError:
            self.rollback(update)
            raise
        except Exception as exc:
            error = classify_error(exc)
            self.rollback(update, error)
            self._notify(request, error)
            if error is exc:
                raise
            raise error from exc
        return self.commit(update, response)

    # ─── Stage ────────────────────────────────────────────────────

    def stage(self, request: MutationRequest) -> OptimisticUpdate:
        """Apply the tentative change synchronously and push its undo record."""
        kind = request.kind
        if kind is MutationKind.CREATE:
            entity_id = f"{TEMP_ID_PREFIX}{uuid.uuid4().hex[:12]}"
        else:
            entity_id = str(request.entity_id)
        key = keys.entity_key(request.entity_class, entity_id)
        current = self.store.get(key)

        if kind is MutationKind.UPDATE:
            base = current.data if current is not None and isinstance(current.data, dict) else {}
            tentative: Any = {**base, **request.payload, "id": base.get("id", entity_id)}
        elif kind is MutationKind.CREATE:
            tentative = {**request.payload, "id": entity_id}
        else:
            tentative = None

        token = self.store.next_issue()
        update = OptimisticUpdate(
            id=uuid.uuid4().hex,
            kind=kind,
            entity_class=request.entity_class,
            entity_id=entity_id,
            entity_key=key,
            timestamp=self.store.clock.now(),
            stage_token=token,
            original_snapshot=current,
            tentative_data=copy.deepcopy(tentative),
        )

        if kind is MutationKind.DELETE:
            self.store.remove(key)
        else:
            self.store.set(key, tentative, policy_for_key(key), issued_at=token)

        base_list = keys.list_key(request.entity_class)
        for entry in self.store.all():
            if not keys.is_list_variant(entry.key, base_list) or not isinstance(entry.data, list):
                continue
            patched = _patch_list(entry.data, kind, entity_id, tentative, append=entry.key == base_list)
            if patched is None:
                continue
            update.list_snapshots[entry.key] = entry
            self.store.set(entry.key, patched, policy_for(entry.tier))

        self._pending.setdefault(key, []).append(update)
        logger.debug("Staged %s %s %s", kind.value, request.entity_class, entity_id)
        return update

    # ─── Commit ───────────────────────────────────────────────────

    def commit(self, update: OptimisticUpdate, response: Any) -> Any:
        """Replace the tentative record with the server's and cascade."""
        stack = self._pending.get(update.entity_key, [])
        others = [u for u in stack if u is not update]
        newest = all(u.stage_token < update.stage_token for u in others)
        superseded = update.stage_token < self._committed_stage.get(update.entity_key, 0)

        record = response if response is not None else update.tentative_data
        real_id = _record_id(record) if update.kind is MutationKind.CREATE else None
        real_id = real_id or update.entity_id
        real_key = keys.entity_key(update.entity_class, real_id)

        if update.kind is MutationKind.CREATE and real_key != update.entity_key:
            self.store.remove(update.entity_key)

        if not superseded:
            self._committed_stage[update.entity_key] = update.stage_token
            committed = self._committed_entry(real_key, record, update)
            for other in others:
                other.original_snapshot = committed
                other.list_snapshots = {
                    lk: self._swap_in_snapshot(snap, update, record)
                    for lk, snap in other.list_snapshots.items()
                }
            if newest:
                if update.kind is MutationKind.DELETE:
                    self.store.remove(real_key)
                else:
                    self.store.set(real_key, record, policy_for_key(real_key))
                self._swap_in_lists(update, record)

        self._discard(update, MutationState.COMMITTED)
        if self.metrics is not None:
            self.metrics.inc("mutations_committed")

        exclude = (real_key,) if response is not None else ()
        related = record if isinstance(record, dict) else None
        self.invalidation.invalidate(update.entity_class, real_id, related=related, exclude=exclude)
        logger.debug("Committed %s %s %s", update.kind.value, update.entity_class, real_id)
        return response

    def _committed_entry(self, key: QueryKey, record: Any, update: OptimisticUpdate) -> Entry | None:
        if update.kind is MutationKind.DELETE:
            return None
        policy = policy_for_key(key)
        now = self.store.clock.now()
        return Entry(
            key=key,
            data=record,
            fetched_at=now,
            stale_at=now + policy.stale_time_ms,
            gc_at=now + policy.gc_time_ms,
            tier=policy.tier,
            size_bytes=estimate_size(record),
        )

    def _swap_in_snapshot(self, snap: Entry | None, update: OptimisticUpdate, record: Any) -> Entry | None:
        if snap is None or not isinstance(snap.data, list):
            return snap
        record_or_none = None if update.kind is MutationKind.DELETE else record
        patched = self._swap_record(snap.data, update, record_or_none)
        return replace(snap, data=patched, size_bytes=estimate_size(patched))

    def _swap_in_lists(self, update: OptimisticUpdate, record: Any) -> None:
        if update.kind is MutationKind.DELETE:
            return
        for list_key in update.list_snapshots:
            entry = self.store.get(list_key)
            if entry is None or not isinstance(entry.data, list):
                continue
            self.store.set(list_key, self._swap_record(entry.data, update, record), policy_for(entry.tier))

    @staticmethod
    def _swap_record(items: list, update: OptimisticUpdate, record: Any) -> list:
        out = []
        for item in items:
            if _record_id(item) == update.entity_id:
                if record is not None:
                    out.append(record)
            else:
                out.append(item)
        return out

    # ─── Roll back ────────────────────────────────────────────────

    def rollback(self, update: OptimisticUpdate, error: TherasyncError | None = None) -> None:
        """Undo a staged mutation; the store returns to its pre-staging state."""
        stack = self._pending.get(update.entity_key, [])
        later = [u for u in stack if u.stage_token > update.stage_token]

        if later:
            # A later mutation owns the displayed state; it inherits our undo data.
            successor = min(later, key=lambda u: u.stage_token)
            successor.original_snapshot = update.original_snapshot
            for list_key, snap in update.list_snapshots.items():
                if list_key in successor.list_snapshots:
                    successor.list_snapshots[list_key] = snap
                else:
                    self._revert_in_list(list_key, snap, update)
        else:
            self.store.restore(update.entity_key, update.original_snapshot)
            for list_key, snap in update.list_snapshots.items():
                self._revert_in_list(list_key, snap, update)

        self._discard(update, MutationState.ROLLED_BACK)
        if self.metrics is not None:
            self.metrics.inc("mutations_rolled_back")

        if isinstance(error, (ConflictError, NotFoundError)) and update.kind is not MutationKind.CREATE:
            self.invalidation.invalidate(update.entity_class, update.entity_id)
        logger.warning(
            "Rolled back %s %s %s: %s",
            update.kind.value,
            update.entity_class,
            update.entity_id,
            error or "cancelled",
        )

    def _revert_in_list(self, list_key: QueryKey, snap: Entry | None, update: OptimisticUpdate) -> None:
        """Undo this update's record in the current list; other records stay as they are now."""
        entry = self.store.get(list_key)
        if entry is None or not isinstance(entry.data, list):
            return
        reverted = _revert_record(entry.data, update, snap.data if snap is not None else None)
        if reverted != entry.data:
            self.store.replace_data(list_key, reverted)

    # ─── Internal ─────────────────────────────────────────────────

    def _discard(self, update: OptimisticUpdate, state: MutationState) -> None:
        update.state = state
        stack = self._pending.get(update.entity_key)
        if stack is None:
            return
        if update in stack:
            stack.remove(update)
        if not stack:
            del self._pending[update.entity_key]
            self._committed_stage.pop(update.entity_key, None)

    def _notify(self, request: MutationRequest, error: TherasyncError) -> None:
        for handler in self._error_handlers:
            try:
                handler(request, error)
            except Exception:
                logger.exception("Mutation error handler failed")
