import asyncio
import copy

import pytest

from therasync import config
from therasync.background.timers import VirtualTimerScheduler
from therasync.cache.store import EntryStore
from therasync.client import SyncClient
from therasync.mutations.models import MutationKind
from therasync.temporal import ManualClock


@pytest.fixture(autouse=True)
def reset_therasync_config(monkeypatch, tmp_path):
    """Point persistence at a temp dir and reset config between every test."""
    monkeypatch.setenv("THERASYNC_DB", str(tmp_path / "cache.db"))
    config.reload()
    yield
    config.reload()


class FakeBackend:
    """Scripted fetch/mutate collaborators.

    ``responses[key]`` is a list consumed one item per fetch (the last item
    repeats). Exception instances are raised. ``mutations`` works the same
    way for mutate calls; with nothing scripted the request is echoed back
    as the server record.
    """

    def __init__(self):
        self.responses: dict = {}
        self.fetch_calls: list = []
        self.mutations: list = []
        self.mutate_calls: list = []
        self.fetch_gates: dict = {}
        self.mutate_gate: asyncio.Event | None = None
        self._ids = 0

    def respond(self, key, *items):
        self.responses[key] = list(items)

    def calls_for(self, key) -> int:
        return sum(1 for k in self.fetch_calls if k == key)

    async def fetch(self, key):
        self.fetch_calls.append(key)
        gate = self.fetch_gates.get(key)
        if gate is not None:
            await gate.wait()
        queue = self.responses.get(key)
        if not queue:
            raise LookupError(f"no scripted response for {key}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return copy.deepcopy(item)

    async def mutate(self, request):
        self.mutate_calls.append(request)
        if self.mutate_gate is not None:
            await self.mutate_gate.wait()
        if self.mutations:
            item = self.mutations.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item(request) if callable(item) else copy.deepcopy(item)
        if request.kind is MutationKind.DELETE:
            return None
        self._ids += 1
        entity_id = request.entity_id or f"srv-{self._ids}"
        return {**request.payload, "id": entity_id}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def timers(clock):
    return VirtualTimerScheduler(clock)


@pytest.fixture
def store(clock):
    return EntryStore(clock)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend, clock, timers):
    return SyncClient(
        backend.fetch,
        backend.mutate,
        clock=clock,
        timers=timers,
        retry_base_delay=0,
        retry_jitter=0,
    )
