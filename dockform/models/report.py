"""Reconciliation outcomes and the per-resource state machine vocabulary."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from dockform.models.resources import ResourceKind


class Phase(StrEnum):
    """What a session does when finalized."""

    UP = "up"
    DESTROY = "destroy"
    PLAN = "plan"


class Action(StrEnum):
    """What the reconciler decided to do with a resource."""

    UNCHANGED = "unchanged"
    CREATE = "create"
    UPDATE = "update"
    RECREATE = "recreate"
    DELETE = "delete"


class ResourceState(StrEnum):
    """States a resource passes through during one run."""

    PENDING = "pending"
    DIFFING = "diffing"
    UNCHANGED = "unchanged"
    CREATING = "creating"
    UPDATING = "updating"
    RECREATING = "recreating"
    DELETING = "deleting"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


# Allowed moves.  RECREATING -> CREATING happens when the old resource is
# torn down first; UPDATING -> RECREATING/CREATING when the runtime refuses
# an in-place update or the target vanished.
TRANSITIONS: dict[ResourceState, frozenset[ResourceState]] = {
    ResourceState.PENDING: frozenset({ResourceState.DIFFING, ResourceState.DELETING, ResourceState.SKIPPED}),
    ResourceState.DIFFING: frozenset(
        {
            ResourceState.UNCHANGED,
            ResourceState.CREATING,
            ResourceState.UPDATING,
            ResourceState.RECREATING,
            ResourceState.FAILED,
            ResourceState.SKIPPED,
        }
    ),
    ResourceState.UNCHANGED: frozenset({ResourceState.DONE, ResourceState.SKIPPED}),
    ResourceState.CREATING: frozenset({ResourceState.DONE, ResourceState.FAILED, ResourceState.SKIPPED}),
    ResourceState.UPDATING: frozenset(
        {
            ResourceState.DONE,
            ResourceState.FAILED,
            ResourceState.RECREATING,
            ResourceState.CREATING,
            ResourceState.SKIPPED,
        }
    ),
    ResourceState.RECREATING: frozenset(
        {ResourceState.DONE, ResourceState.FAILED, ResourceState.CREATING, ResourceState.SKIPPED}
    ),
    ResourceState.DELETING: frozenset({ResourceState.DONE, ResourceState.FAILED, ResourceState.SKIPPED}),
    ResourceState.DONE: frozenset(),
    ResourceState.FAILED: frozenset(),
    ResourceState.SKIPPED: frozenset(),
}


@dataclass
class ResourceOutcome:
    """Final result for one logical resource."""

    logical_id: str
    kind: ResourceKind
    action: Action
    state: ResourceState
    physical_id: str | None = None
    error: str | None = None
    error_type: str | None = None
    drifted: bool = False
    reason: str = ""
    applied_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "logical_id": self.logical_id,
            "kind": self.kind.value,
            "action": self.action.value,
            "state": self.state.value,
            "physical_id": self.physical_id,
            "error": self.error,
            "error_type": self.error_type,
            "drifted": self.drifted,
            "reason": self.reason,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }


@dataclass
class ReconciliationReport:
    """Per-resource outcome of one run.

    ``skipped`` lists resources never started because the run aborted or was
    cancelled.  In a dry run, the action buckets describe what would happen.
    """

    app: str
    phase: Phase = Phase.UP
    dry_run: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created: list[ResourceOutcome] = field(default_factory=list)
    updated: list[ResourceOutcome] = field(default_factory=list)
    recreated: list[ResourceOutcome] = field(default_factory=list)
    deleted: list[ResourceOutcome] = field(default_factory=list)
    unchanged: list[ResourceOutcome] = field(default_factory=list)
    failed: list[ResourceOutcome] = field(default_factory=list)
    skipped: list[ResourceOutcome] = field(default_factory=list)

    _BUCKETS = ("created", "updated", "recreated", "deleted", "unchanged", "failed", "skipped")

    def add(self, outcome: ResourceOutcome) -> None:
        """File *outcome* under the bucket matching its state and action."""
        if outcome.state == ResourceState.FAILED:
            self.failed.append(outcome)
        elif outcome.state == ResourceState.SKIPPED:
            self.skipped.append(outcome)
        elif outcome.action == Action.CREATE:
            self.created.append(outcome)
        elif outcome.action == Action.UPDATE:
            self.updated.append(outcome)
        elif outcome.action == Action.RECREATE:
            self.recreated.append(outcome)
        elif outcome.action == Action.DELETE:
            self.deleted.append(outcome)
        else:
            self.unchanged.append(outcome)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.recreated or self.deleted)

    def outcomes(self) -> list[ResourceOutcome]:
        return [o for bucket in self._BUCKETS for o in getattr(self, bucket)]

    def get(self, logical_id: str) -> ResourceOutcome | None:
        """Return the outcome for *logical_id* (deletions included)."""
        for outcome in self.outcomes():
            if outcome.logical_id == logical_id:
                return outcome
        return None

    def raise_for_failures(self) -> None:
        from dockform.errors import ReconciliationFailed

        if self.failed:
            raise ReconciliationFailed(self)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "app": self.app,
            "phase": self.phase.value,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        for bucket in self._BUCKETS:
            result[bucket] = [o.to_dict() for o in getattr(self, bucket)]
        return result
