"""Shared fixtures for dockform tests.

FakeRuntime is an in-memory RuntimeClient: it hands out sequential physical
IDs, records every call in order and can be told to fail, drift or update in
place, so reconciler tests run without a Docker daemon.
"""

from __future__ import annotations

import asyncio
import itertools
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass

import pytest

from dockform.app import App
from dockform.errors import DriftDetected, RequiresRecreate
from dockform.models.config import DockformConfig
from dockform.models.report import Phase, ReconciliationReport
from dockform.models.resources import ResourceKind
from dockform.runtime.base import PhysicalState, ResolvedResource, RuntimeClient, UpdatePolicy
from dockform.state.store import MemoryStateStore

# ---------------------------------------------------------------------------
# Fake runtime
# ---------------------------------------------------------------------------


@dataclass
class Call:
    seq: int
    operation: str
    kind: ResourceKind
    logical_id: str
    physical_id: str = ""


class FakeRuntime(RuntimeClient):
    """In-memory runtime with a full call log."""

    def __init__(
        self,
        in_place: dict[ResourceKind, frozenset[str]] | None = None,
        delay: float = 0.0,
        inspect_delay: float = 0.0,
    ) -> None:
        self.objects: dict[str, ResolvedResource] = {}
        self.calls: list[Call] = []
        self.fail_on: dict[str, Exception] = {}
        self.refuse_update = False
        self.in_place = in_place if in_place is not None else {ResourceKind.CONTAINER: frozenset({"restart"})}
        self.delay = delay
        self.inspect_delay = inspect_delay
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._ids = itertools.count(1)
        self._seq = itertools.count(1)

    # -- helpers ---------------------------------------------------------

    def _log(self, operation: str, kind: ResourceKind, logical_id: str, physical_id: str = "") -> None:
        self.calls.append(Call(next(self._seq), operation, kind, logical_id, physical_id))

    async def _busy(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

    def ops(self, operation: str) -> list[Call]:
        return [c for c in self.calls if c.operation == operation]

    def mutating_calls(self) -> list[Call]:
        return [c for c in self.calls if c.operation != "inspect"]

    def seq_of(self, operation: str, logical_id: str) -> int:
        return next(c.seq for c in self.calls if c.operation == operation and c.logical_id == logical_id)

    def live(self, logical_id: str) -> list[str]:
        return [pid for pid, res in self.objects.items() if res.logical_id == logical_id]

    def delete_externally(self, physical_id: str) -> None:
        del self.objects[physical_id]

    # -- RuntimeClient ---------------------------------------------------

    async def ensure(self, resource: ResolvedResource) -> str:
        self._log("ensure", resource.kind, resource.logical_id)
        await self._busy()
        if resource.logical_id in self.fail_on:
            raise self.fail_on[resource.logical_id]
        physical_id = f"{resource.kind.value}-{resource.logical_id}-{next(self._ids)}"
        self.objects[physical_id] = resource
        return physical_id

    async def inspect(self, kind: ResourceKind, physical_id: str) -> PhysicalState | None:
        resource = self.objects.get(physical_id)
        self._log("inspect", kind, resource.logical_id if resource else "", physical_id)
        if self.inspect_delay:
            await asyncio.sleep(self.inspect_delay)
        if resource is None:
            return None
        return PhysicalState(kind, physical_id, status="running", labels=resource.labels())

    async def update(self, resource: ResolvedResource, physical_id: str, changed: frozenset[str]) -> str:
        self._log("update", resource.kind, resource.logical_id, physical_id)
        await self._busy()
        if physical_id not in self.objects:
            raise DriftDetected(f"{physical_id} vanished", resource.logical_id)
        if self.refuse_update:
            raise RequiresRecreate("refused", resource.logical_id)
        self.objects[physical_id] = resource
        return physical_id

    async def remove(self, kind: ResourceKind, physical_id: str) -> None:
        resource = self.objects.get(physical_id)
        self._log("remove", kind, resource.logical_id if resource else "", physical_id)
        await self._busy()
        self.objects.pop(physical_id, None)

    def update_policy(self, kind: ResourceKind, changed: frozenset[str]) -> UpdatePolicy:
        allowed = self.in_place.get(kind, frozenset())
        if changed and changed <= allowed:
            return UpdatePolicy.IN_PLACE
        return UpdatePolicy.RECREATE

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------


async def run_stack(
    runtime: FakeRuntime,
    store: MemoryStateStore,
    declare: Callable[[App], object] | None = None,
    phase: Phase = Phase.UP,
    config: DockformConfig | None = None,
) -> ReconciliationReport:
    """Open a session on *store*, declare resources, finalize and close."""
    async with App(store.app, runtime=runtime, store=store, phase=phase, config=config) as app:
        if declare is not None:
            declare(app)
        return await app.finalize()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def store() -> Iterator[MemoryStateStore]:
    memory = MemoryStateStore(f"test-{uuid.uuid4().hex[:8]}")
    yield memory
    memory.release()


@pytest.fixture()
def config() -> DockformConfig:
    return DockformConfig()
