"""Reconciler: converge physical resources onto a set of declarations.

One run goes through these passes:

    graph     -> build and order the declarations (configuration errors only)
    diff      -> compare each declaration with its state record (inspect only)
    invalidate-> force recreate on dependents embedding a changing identity
    teardown  -> remove the old physical side of recreated resources
    apply     -> ensure / update in dependency order, commit after each call
    prune     -> delete recorded resources no longer declared, dependents first

Independent branches of the graph run concurrently, bounded by a semaphore.
A resource starts only after all of its dependencies finished successfully.
The first failure aborts the run: nothing new is started, in-flight calls
finish and are committed, and nothing is rolled back.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dockform.errors import (
    DriftDetected,
    IllegalTransition,
    RequiresRecreate,
    RunCancelled,
    RuntimeClientError,
    StoreError,
)
from dockform.graph.dependency_graph import DependencyGraph
from dockform.models.report import (
    TRANSITIONS,
    Action,
    Phase,
    ReconciliationReport,
    ResourceOutcome,
    ResourceState,
)
from dockform.models.resources import Descriptor, ResourceKind, changed_fields, encode_config, resolve_config
from dockform.models.state import TOMBSTONE, StateRecord, _Tombstone
from dockform.observability.logging import get_logger
from dockform.observability.metrics import last_run_timestamp_seconds, resource_operations_total
from dockform.runtime.base import (
    LABEL_APP,
    LABEL_LOGICAL_ID,
    PhysicalState,
    ResolvedResource,
    RuntimeClient,
    UpdatePolicy,
)
from dockform.state.hashing import config_hash
from dockform.state.store import StateStore

_logger = get_logger("reconciler")

_TERMINAL = frozenset({ResourceState.DONE, ResourceState.FAILED, ResourceState.SKIPPED})


@dataclass
class _Plan:
    """Decision taken for one declared resource during the diff pass."""

    descriptor: Descriptor
    record: StateRecord | None
    action: Action
    config_hash: str
    encoded: dict[str, Any]
    changed: frozenset[str] = frozenset()
    drifted: bool = False
    reason: str = ""

    @property
    def logical_id(self) -> str:
        return self.descriptor.logical_id

    @property
    def kind(self) -> ResourceKind:
        return self.descriptor.kind

    def referenced(self) -> frozenset[str]:
        """Dependencies whose physical identity is embedded in the config."""
        return frozenset(r.logical_id for _, r in self.descriptor.references)


@dataclass
class _Run:
    """Mutable bookkeeping for one run."""

    app: str
    states: dict[str, ResourceState] = field(default_factory=dict)
    kinds: dict[str, ResourceKind] = field(default_factory=dict)
    actions: dict[str, Action] = field(default_factory=dict)
    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    physical_ids: dict[str, str] = field(default_factory=dict)
    abort_reason: str = ""


class Reconciler:
    """Drives one or more reconciliation runs for an app.

    Args:
        runtime:      Container runtime the resources live in.
        store:        State store; the caller must hold its lock.
        app:          App name stamped on managed resources.
        max_workers:  Upper bound on concurrent runtime calls.
        run_timeout:  Seconds after which the run is cancelled (0 = never).
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        store: StateStore,
        app: str,
        *,
        max_workers: int = 4,
        run_timeout: float = 0.0,
    ) -> None:
        self._runtime = runtime
        self._store = store
        self._app = app
        self._max_workers = max(1, max_workers)
        self._run_timeout = run_timeout
        self._cancelled = False
        self._slots: asyncio.Semaphore | None = None
        self._commit_lock: asyncio.Lock | None = None
        self._run: _Run | None = None
        self._log = _logger.bind(app=app)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop starting new operations.  In-flight runtime calls complete."""
        if not self._cancelled:
            self._log.warning("run_cancel_requested")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def run(self, descriptors: Iterable[Descriptor], phase: Phase = Phase.UP) -> ReconciliationReport:
        """Reconcile *descriptors* and return the per-resource report.

        Raises:
            ConfigurationError: before any runtime call or store access.
            StoreError: the state store could not be loaded.
        """
        declared = [] if phase == Phase.DESTROY else list(descriptors)
        graph = DependencyGraph.from_descriptors(declared)
        order = graph.creation_order()
        by_id = {d.logical_id: d for d in declared}

        report = ReconciliationReport(
            app=self._app,
            phase=phase,
            dry_run=phase == Phase.PLAN,
            started_at=datetime.now(tz=UTC),
        )
        self._cancelled = False
        self._slots = asyncio.Semaphore(self._max_workers)
        self._commit_lock = asyncio.Lock()
        run = self._run = _Run(app=self._app)

        loop = asyncio.get_running_loop()
        timer = loop.call_later(self._run_timeout, self._on_timeout) if self._run_timeout > 0 else None
        self._log.info("run_started", phase=phase.value, declared=len(declared))
        try:
            records = await loop.run_in_executor(None, self._store.load)
            orphans = {lid: rec for lid, rec in records.items() if lid not in by_id}
            for lid in order:
                run.states[lid] = ResourceState.PENDING
                run.kinds[lid] = by_id[lid].kind
            for lid, rec in orphans.items():
                run.states[lid] = ResourceState.PENDING
                run.kinds[lid] = rec.kind
                run.actions[lid] = Action.DELETE

            plans = await self._diff(order, by_id, records)
            if not self._should_stop():
                self._invalidate(graph, order, plans, records)

            if phase == Phase.PLAN:
                self._report_plan(order, plans, orphans)
            else:
                if not self._should_stop():
                    await self._teardown(graph, order, plans)
                await self._apply(graph, order, plans)
                await self._prune(orphans)
        finally:
            if timer is not None:
                timer.cancel()

        for lid in [*order, *DependencyGraph.from_records(orphans).deletion_order()]:
            outcome = run.outcomes.get(lid)
            if outcome is None:
                outcome = self._skip(lid, "not started")
            report.add(outcome)
        report.finished_at = datetime.now(tz=UTC)

        if not report.dry_run:
            last_run_timestamp_seconds.labels(app=self._app).set(report.finished_at.timestamp())
        self._log.info(
            "run_finished",
            phase=phase.value,
            created=len(report.created),
            updated=len(report.updated),
            recreated=len(report.recreated),
            deleted=len(report.deleted),
            unchanged=len(report.unchanged),
            failed=len(report.failed),
            skipped=len(report.skipped),
        )
        return report

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    async def _diff(
        self,
        order: list[str],
        by_id: Mapping[str, Descriptor],
        records: Mapping[str, StateRecord],
    ) -> dict[str, _Plan]:
        plans: dict[str, _Plan] = {}

        async def diff_one(lid: str) -> None:
            assert self._slots is not None
            async with self._slots:
                if self._should_stop():
                    return
                self._transition(lid, ResourceState.DIFFING)
                try:
                    plans[lid] = await self._plan(by_id[lid], records.get(lid))
                except RuntimeClientError as exc:
                    self._fail(lid, exc)
                else:
                    self._run_actions()[lid] = plans[lid].action

        await asyncio.gather(*(diff_one(lid) for lid in order))
        return plans

    async def _plan(self, descriptor: Descriptor, record: StateRecord | None) -> _Plan:
        digest = config_hash(descriptor.config)
        encoded = encode_config(descriptor.config)
        plan = _Plan(descriptor, record, Action.CREATE, digest, encoded, reason="not recorded")
        if record is None:
            return plan

        if record.kind != descriptor.kind:
            plan.action = Action.RECREATE
            plan.reason = f"kind changed from {record.kind.value}"
            return plan

        physical = await self._runtime.inspect(record.kind, record.physical_id)
        if physical is None or not self._owns(physical, descriptor.logical_id):
            plan.drifted = True
            plan.reason = "physical resource missing" if physical is None else "physical resource relabelled"
            self._log.warning(
                "drift_detected",
                logical_id=descriptor.logical_id,
                kind=descriptor.kind.value,
                physical_id=record.physical_id,
                reason=plan.reason,
            )
            return plan
        self._log.debug("resource_inspected", logical_id=descriptor.logical_id, status=physical.status)

        if record.config_hash == digest:
            plan.action = Action.UNCHANGED
            plan.reason = ""
            return plan

        plan.changed = changed_fields(record.config, encoded)
        policy = self._runtime.update_policy(descriptor.kind, plan.changed)
        plan.action = Action.UPDATE if policy == UpdatePolicy.IN_PLACE else Action.RECREATE
        plan.reason = "changed: " + ", ".join(sorted(plan.changed))
        return plan

    def _invalidate(
        self,
        graph: DependencyGraph,
        order: list[str],
        plans: dict[str, _Plan],
        records: Mapping[str, StateRecord],
    ) -> None:
        """Force recreate on resources embedding a dependency that changes identity."""
        renewed: set[str] = set()
        for lid in order:
            plan = plans.get(lid)
            if plan is None:
                continue
            if plan.action in (Action.CREATE, Action.RECREATE):
                renewed.add(lid)
                continue
            record = plan.record
            assert record is not None
            embedded = [edge for edge in graph.edges_from(lid) if edge.embeds_identity]
            stale = sorted(
                edge.target
                for edge in embedded
                if edge.target in renewed or self._recorded_id_differs(record, edge.target, records.get(edge.target))
            )
            if stale:
                fields = sorted({edge.source_field for edge in embedded if edge.target in stale})
                plan.action = Action.RECREATE
                plan.reason = f"dependency {stale[0]} has a new identity"
                self._run_actions()[lid] = Action.RECREATE
                renewed.add(lid)
                self._log.info("recreate_forced", logical_id=lid, dependencies=stale, fields=fields)

    def _owns(self, physical: PhysicalState, logical_id: str) -> bool:
        """Management labels, where the object carries them, must name this app and resource."""
        labels = physical.labels
        return labels.get(LABEL_APP, self._app) == self._app and labels.get(LABEL_LOGICAL_ID, logical_id) == logical_id

    @staticmethod
    def _recorded_id_differs(record: StateRecord, dep: str, dep_record: StateRecord | None) -> bool:
        recorded = record.dependency_ids.get(dep)
        if recorded is None:
            return False
        return dep_record is None or dep_record.physical_id != recorded

    def _report_plan(
        self,
        order: list[str],
        plans: Mapping[str, _Plan],
        orphans: Mapping[str, StateRecord],
    ) -> None:
        assert self._run is not None
        for lid in order:
            plan = plans.get(lid)
            if plan is None or lid in self._run.outcomes:
                continue
            self._run.outcomes[lid] = ResourceOutcome(
                logical_id=lid,
                kind=plan.kind,
                action=plan.action,
                state=ResourceState.PENDING,
                physical_id=plan.record.physical_id if plan.record else None,
                drifted=plan.drifted,
                reason=plan.reason,
            )
        for lid, record in orphans.items():
            self._run.outcomes[lid] = ResourceOutcome(
                logical_id=lid,
                kind=record.kind,
                action=Action.DELETE,
                state=ResourceState.PENDING,
                physical_id=record.physical_id,
                reason="no longer declared",
            )

    # ------------------------------------------------------------------
    # Teardown / apply / prune
    # ------------------------------------------------------------------

    async def _teardown(self, graph: DependencyGraph, order: list[str], plans: Mapping[str, _Plan]) -> None:
        """Remove the existing side of every recreate, dependents first."""
        targets = [lid for lid in order if lid in plans and plans[lid].action == Action.RECREATE]
        if not targets:
            return
        target_set = set(targets)

        async def teardown_one(lid: str) -> bool:
            plan = plans[lid]
            assert plan.record is not None
            self._transition(lid, ResourceState.RECREATING)
            await self._remove(lid, plan.record)
            return True

        await self._schedule(
            list(reversed(targets)),
            {lid: graph.dependents(lid) & target_set for lid in targets},
            teardown_one,
        )

    async def _apply(self, graph: DependencyGraph, order: list[str], plans: Mapping[str, _Plan]) -> None:
        async def apply_one(lid: str) -> bool:
            return await self._apply_one(plans[lid])

        await self._schedule(order, {lid: graph.dependencies(lid) for lid in order}, apply_one)

    async def _prune(self, orphans: Mapping[str, StateRecord]) -> None:
        if not orphans:
            return
        graph = DependencyGraph.from_records(orphans)

        async def delete_one(lid: str) -> bool:
            record = orphans[lid]
            self._transition(lid, ResourceState.DELETING)
            await self._remove(lid, record)
            self._done(lid, Action.DELETE, record.physical_id, reason="no longer declared")
            return True

        await self._schedule(
            graph.deletion_order(),
            {lid: graph.dependents(lid) for lid in orphans},
            delete_one,
        )

    async def _apply_one(self, plan: _Plan) -> bool:
        assert self._run is not None
        lid = plan.logical_id
        action = plan.action

        if action in (Action.UNCHANGED, Action.UPDATE):
            assert plan.record is not None
            stale = [
                dep
                for dep in sorted(plan.referenced())
                if plan.record.dependency_ids.get(dep, self._run.physical_ids[dep]) != self._run.physical_ids[dep]
            ]
            if stale:
                self._log.info("recreate_forced", logical_id=lid, dependencies=stale)
                self._transition(lid, ResourceState.RECREATING)
                action = self._run.actions[lid] = Action.RECREATE
                await self._remove(lid, plan.record)

        if action == Action.UNCHANGED:
            assert plan.record is not None
            self._transition(lid, ResourceState.UNCHANGED)
            self._run.physical_ids[lid] = plan.record.physical_id
            self._done(lid, Action.UNCHANGED, plan.record.physical_id, applied_at=plan.record.last_applied_at)
            return True

        if action == Action.UPDATE:
            assert plan.record is not None
            self._transition(lid, ResourceState.UPDATING)
            try:
                resolved = self._resolve(plan)
                physical_id = await self._runtime.update(resolved, plan.record.physical_id, plan.changed)
            except RequiresRecreate:
                self._log.info("update_refused_recreating", logical_id=lid)
                self._transition(lid, ResourceState.RECREATING)
                action = self._run.actions[lid] = Action.RECREATE
                await self._remove(lid, plan.record)
            except DriftDetected:
                self._log.warning("drift_detected", logical_id=lid, physical_id=plan.record.physical_id)
                self._transition(lid, ResourceState.CREATING)
                plan.drifted = True
                action = self._run.actions[lid] = Action.CREATE
            else:
                record = await self._commit_record(plan, physical_id)
                self._done(lid, Action.UPDATE, physical_id, plan.reason, applied_at=record.last_applied_at)
                return True

        if self._run.states[lid] not in (ResourceState.CREATING, ResourceState.RECREATING):
            self._transition(lid, ResourceState.RECREATING if action == Action.RECREATE else ResourceState.CREATING)
        physical_id = await self._runtime.ensure(self._resolve(plan))
        record = await self._commit_record(plan, physical_id)
        self._done(lid, action, physical_id, plan.reason, drifted=plan.drifted, applied_at=record.last_applied_at)
        return True

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _schedule(
        self,
        nodes: list[str],
        prerequisites: Mapping[str, Iterable[str]],
        work: Callable[[str], Awaitable[bool]],
    ) -> None:
        """Run *work* for every node once its prerequisites succeeded.

        Nodes already in a terminal state are passed over.  A node whose
        prerequisite failed or was skipped is skipped.
        """
        assert self._run is not None and self._slots is not None
        finished = {lid: asyncio.Event() for lid in nodes}
        succeeded: dict[str, bool] = {}

        async def runner(lid: str) -> None:
            try:
                waits = [dep for dep in prerequisites.get(lid, ()) if dep in finished]
                for dep in waits:
                    await finished[dep].wait()
                if self._run_state(lid) in _TERMINAL:
                    succeeded[lid] = False
                    return
                blocked = [dep for dep in waits if not succeeded.get(dep)]
                if blocked:
                    self._skip(lid, f"dependency {sorted(blocked)[0]} did not complete")
                    succeeded[lid] = False
                    return
                assert self._slots is not None
                async with self._slots:
                    if self._should_stop():
                        self._skip(lid, self._stop_reason(), cancelled=self._cancelled)
                        succeeded[lid] = False
                        return
                    try:
                        succeeded[lid] = await work(lid)
                    except (RuntimeClientError, StoreError, OSError) as exc:
                        self._fail(lid, exc)
                        succeeded[lid] = False
            finally:
                finished[lid].set()

        await asyncio.gather(*(runner(lid) for lid in nodes))

    def _should_stop(self) -> bool:
        assert self._run is not None
        return self._cancelled or bool(self._run.abort_reason)

    def _stop_reason(self) -> str:
        assert self._run is not None
        if self._cancelled:
            return "run cancelled"
        return self._run.abort_reason

    def _on_timeout(self) -> None:
        self._log.warning("run_timeout_reached", timeout_seconds=self._run_timeout)
        self.cancel()

    # ------------------------------------------------------------------
    # Runtime and store helpers
    # ------------------------------------------------------------------

    def _resolve(self, plan: _Plan) -> ResolvedResource:
        assert self._run is not None
        config = resolve_config(plan.descriptor.config, self._run.physical_ids.__getitem__)
        return ResolvedResource(plan.kind, plan.logical_id, self._app, config, plan.config_hash)

    async def _remove(self, lid: str, record: StateRecord) -> None:
        await self._runtime.remove(record.kind, record.physical_id)
        await self._commit({lid: TOMBSTONE})
        self._log.info("resource_removed", logical_id=lid, kind=record.kind.value, physical_id=record.physical_id)

    async def _commit_record(self, plan: _Plan, physical_id: str) -> StateRecord:
        assert self._run is not None
        record = StateRecord(
            logical_id=plan.logical_id,
            kind=plan.kind,
            physical_id=physical_id,
            config_hash=plan.config_hash,
            last_applied_at=datetime.now(tz=UTC),
            config=plan.encoded,
            depends_on=tuple(sorted(plan.descriptor.depends_on)),
            dependency_ids={dep: self._run.physical_ids[dep] for dep in sorted(plan.referenced())},
        )
        self._run.physical_ids[plan.logical_id] = physical_id
        await self._commit({plan.logical_id: record})
        return record

    async def _commit(self, changes: Mapping[str, StateRecord | _Tombstone]) -> None:
        assert self._commit_lock is not None
        loop = asyncio.get_running_loop()
        async with self._commit_lock:
            await loop.run_in_executor(None, self._store.commit, dict(changes))

    # ------------------------------------------------------------------
    # State machine bookkeeping
    # ------------------------------------------------------------------

    def _run_state(self, lid: str) -> ResourceState:
        assert self._run is not None
        return self._run.states[lid]

    def _run_actions(self) -> dict[str, Action]:
        assert self._run is not None
        return self._run.actions

    def _transition(self, lid: str, new: ResourceState) -> None:
        assert self._run is not None
        current = self._run.states[lid]
        if new not in TRANSITIONS[current]:
            raise IllegalTransition(f"Resource '{lid}' cannot move from {current.value} to {new.value}")
        self._run.states[lid] = new

    def _done(
        self,
        lid: str,
        action: Action,
        physical_id: str,
        reason: str = "",
        *,
        drifted: bool = False,
        applied_at: datetime | None = None,
    ) -> None:
        assert self._run is not None
        self._transition(lid, ResourceState.DONE)
        kind = self._run.kinds[lid]
        self._run.outcomes[lid] = ResourceOutcome(
            logical_id=lid,
            kind=kind,
            action=action,
            state=ResourceState.DONE,
            physical_id=physical_id,
            drifted=drifted,
            reason=reason,
            applied_at=applied_at,
        )
        resource_operations_total.labels(kind=kind.value, action=action.value).inc()
        if action != Action.UNCHANGED:
            self._log.info(
                "resource_applied",
                logical_id=lid,
                kind=kind.value,
                action=action.value,
                physical_id=physical_id,
                drifted=drifted,
            )

    def _fail(self, lid: str, exc: Exception) -> None:
        assert self._run is not None
        self._transition(lid, ResourceState.FAILED)
        kind = self._run.kinds[lid]
        record_action = self._run.actions.get(lid, Action.CREATE)
        self._run.outcomes[lid] = ResourceOutcome(
            logical_id=lid,
            kind=kind,
            action=record_action,
            state=ResourceState.FAILED,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if not self._run.abort_reason:
            self._run.abort_reason = f"run aborted after {lid} failed"
        resource_operations_total.labels(kind=kind.value, action="failed").inc()
        self._log.error(
            "resource_failed", logical_id=lid, kind=kind.value, error=str(exc), error_type=type(exc).__name__
        )

    def _skip(self, lid: str, reason: str, *, cancelled: bool = False) -> ResourceOutcome:
        assert self._run is not None
        if self._run.states[lid] not in _TERMINAL:
            self._transition(lid, ResourceState.SKIPPED)
        error = RunCancelled(reason) if cancelled or self._cancelled else None
        outcome = ResourceOutcome(
            logical_id=lid,
            kind=self._run.kinds[lid],
            action=self._run.actions.get(lid, Action.CREATE),
            state=ResourceState.SKIPPED,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
            reason=reason,
        )
        self._run.outcomes[lid] = outcome
        return outcome
