"""Predictive prefetching and cache warm-up.

Prefetches are a performance optimization only: every failure is logged
and swallowed, and the real read later pays the normal fetch cost.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from therasync import keys
from therasync.cache.invalidation import Role
from therasync.keys import QueryKey, key_to_str

logger = logging.getLogger("therasync.prefetch")


class QueryLoader(Protocol):
    async def read(self, key: QueryKey, policy_override: Any = None) -> Any: ...

    async def prefetch(self, key: QueryKey, policy_override: Any = None) -> bool: ...


@dataclass
class PrefetchReport:
    """Outcome of one navigation or warm-up prefetch round."""
    issued: list[QueryKey] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0


class PrefetchManager:
    """Speculative reads for what the next screen will probably need.

    Usage:
        prefetcher = PrefetchManager(client)
        await prefetcher.on_navigate("client", "client-42")
    """

    def __init__(self, loader: QueryLoader, metrics=None):
        self.loader = loader
        self.metrics = metrics
        self._strategies: dict[str, Callable[[str], Awaitable[list[tuple[QueryKey, str]]]]] = {
            "client": self._client_targets,
            "therapist": self._therapist_targets,
            "session": self._session_targets,
        }

    async def on_navigate(self, entity_class: str, entity_id: str) -> PrefetchReport:
        """Prefetch related data for the entity now being viewed."""
        strategy = self._strategies.get(entity_class)
        if strategy is None:
            return PrefetchReport()
        try:
            targets = await strategy(entity_id)
        except Exception as e:
            logger.warning("Prefetch planning for %s %s failed: %s", entity_class, entity_id, e)
            self._count_failure()
            return PrefetchReport(failed=1)
        return await self._run(targets)

    async def warmup_critical(self) -> PrefetchReport:
        """Warm the current user and the unread-notification count."""
        return await self._run([
            (keys.user(), "profile"),
            (keys.unread_notifications(), "realtime"),
        ])

    async def warmup_for_role(self, role: Role | str, clinic_id: str | None = None) -> PrefetchReport:
        """Warm the data each role lands on first."""
        try:
            resolved = Role(role)
        except ValueError:
            logger.warning("Unknown role %r; no warm-up", role)
            return PrefetchReport()
        if resolved is Role.ADMINISTRATOR:
            targets = [(keys.analytics(), "static")]
        elif resolved is Role.CLINIC_ADMIN:
            targets = [(keys.clinic_analytics(clinic_id), "static")] if clinic_id else []
        else:
            targets = [(keys.upcoming_sessions(), "session")]
        return await self._run(targets)

    # ─── Strategies ───────────────────────────────────────────────

    async def _client_targets(self, client_id: str) -> list[tuple[QueryKey, str]]:
        return [
            (keys.client_sessions(client_id), "session"),
            (keys.client_consultations(client_id), "session"),
        ]

    async def _therapist_targets(self, therapist_id: str) -> list[tuple[QueryKey, str]]:
        return [
            (keys.therapist_sessions(therapist_id), "session"),
            (keys.therapist_availability(therapist_id), "profile"),
        ]

    async def _session_targets(self, session_id: str) -> list[tuple[QueryKey, str]]:
        # The session record names its client and therapist.
        record = await self.loader.read(keys.session(session_id))
        targets = []
        if isinstance(record, dict):
            if record.get("clientId"):
                targets.append((keys.client(str(record["clientId"])), "profile"))
            if record.get("therapistId"):
                targets.append((keys.therapist(str(record["therapistId"])), "profile"))
        return targets

    # ─── Execution ────────────────────────────────────────────────

    async def _run(self, targets: list[tuple[QueryKey, str]]) -> PrefetchReport:
        report = PrefetchReport(issued=[key for key, _ in targets])
        if not targets:
            return report
        results = await asyncio.gather(
            *(self.loader.prefetch(key, tier) for key, tier in targets),
            return_exceptions=True,
        )
        for (key, _), result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("Prefetch of %s failed: %s", key_to_str(key), result)
                report.failed += 1
                self._count_failure()
            else:
                report.succeeded += 1
        return report

    def _count_failure(self) -> None:
        if self.metrics is not None:
            self.metrics.inc("prefetch_failures")
