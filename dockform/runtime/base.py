"""Runtime client interface the reconciler depends on.

The engine never talks to a container engine directly.  It hands a
ResolvedResource (config with every reference replaced by a physical ID)
to a RuntimeClient and gets physical IDs back.  Each resource kind has its
own operation group and its own update policy.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from dockform.models.resources import ResourceKind

# Labels stamped on every managed object.
LABEL_APP = "dockform.app"
LABEL_LOGICAL_ID = "dockform.logical-id"
LABEL_CONFIG_HASH = "dockform.config-hash"


class UpdatePolicy(StrEnum):
    """How a changed resource is brought up to date."""

    IN_PLACE = "in_place"
    RECREATE = "recreate"


@dataclass(frozen=True)
class ResolvedResource:
    """A descriptor ready for the runtime: references resolved to physical IDs."""

    kind: ResourceKind
    logical_id: str
    app: str
    config: Mapping[str, Any]
    config_hash: str

    @property
    def name(self) -> str:
        return str(self.config.get("name") or self.logical_id)

    def labels(self) -> dict[str, str]:
        """User labels plus the management labels."""
        return {
            **dict(self.config.get("labels") or {}),
            LABEL_APP: self.app,
            LABEL_LOGICAL_ID: self.logical_id,
            LABEL_CONFIG_HASH: self.config_hash,
        }


@dataclass(frozen=True)
class PhysicalState:
    """What the runtime reports about an existing physical resource."""

    kind: ResourceKind
    physical_id: str
    status: str = ""
    labels: dict[str, str] = field(default_factory=dict)


class RuntimeClient(ABC):
    """Capability set: ensure / inspect / update / remove per resource kind.

    Every method may raise RuntimeUnavailable (transient) or RuntimeRejected
    (the runtime refused the operation).
    """

    @abstractmethod
    async def ensure(self, resource: ResolvedResource) -> str:
        """Create (or pull/build) *resource* and return its physical ID."""

    @abstractmethod
    async def inspect(self, kind: ResourceKind, physical_id: str) -> PhysicalState | None:
        """Return the physical state, or None when it does not exist."""

    @abstractmethod
    async def remove(self, kind: ResourceKind, physical_id: str) -> None:
        """Remove a physical resource.  Already-absent counts as success."""

    async def update(self, resource: ResolvedResource, physical_id: str, changed: frozenset[str]) -> str:
        """Apply *changed* options in place and return the (possibly new) physical ID.

        Raises:
            RequiresRecreate: the runtime cannot apply this change in place.
            DriftDetected: the physical resource vanished.
        """
        from dockform.errors import RequiresRecreate

        raise RequiresRecreate(f"{resource.kind.value} cannot be updated in place", resource.logical_id)

    def update_policy(self, kind: ResourceKind, changed: frozenset[str]) -> UpdatePolicy:
        """Which policy applies when the options in *changed* differ."""
        return UpdatePolicy.RECREATE

    async def close(self) -> None:  # noqa: B027
        """Release connections and worker threads."""
