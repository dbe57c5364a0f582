"""Persisted state records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final

from dockform.models.resources import ResourceKind


@dataclass(frozen=True)
class StateRecord:
    """Last-known physical identity of one declared resource.

    ``physical_id`` is assigned by the runtime and opaque to the engine.
    ``dependency_ids`` maps each dependency's logical ID to the physical ID it
    had when this resource was applied; a mismatch means the physical
    reference embedded in this resource is stale.
    """

    logical_id: str
    kind: ResourceKind
    physical_id: str
    config_hash: str
    last_applied_at: datetime
    config: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    dependency_ids: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "logical_id": self.logical_id,
            "kind": self.kind.value,
            "physical_id": self.physical_id,
            "config_hash": self.config_hash,
            "last_applied_at": self.last_applied_at.isoformat(),
            "config": self.config,
            "depends_on": list(self.depends_on),
            "dependency_ids": dict(self.dependency_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRecord:
        return cls(
            logical_id=data["logical_id"],
            kind=ResourceKind(data["kind"]),
            physical_id=data["physical_id"],
            config_hash=data["config_hash"],
            last_applied_at=datetime.fromisoformat(data["last_applied_at"]),
            config=dict(data.get("config") or {}),
            depends_on=tuple(data.get("depends_on") or ()),
            dependency_ids=dict(data.get("dependency_ids") or {}),
        )


class _Tombstone:
    """Marks a record for removal in a commit."""

    _instance: _Tombstone | None = None

    def __new__(cls) -> _Tombstone:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "TOMBSTONE"


TOMBSTONE: Final = _Tombstone()
