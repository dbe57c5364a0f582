"""Core data structures for dockform."""

from dockform.models.config import DockformConfig
from dockform.models.report import (
    Action,
    Phase,
    ReconciliationReport,
    ResourceOutcome,
    ResourceState,
)
from dockform.models.resources import (
    Descriptor,
    DescriptorHandle,
    Mount,
    MountType,
    Ref,
    ResourceKind,
    ref,
)
from dockform.models.state import TOMBSTONE, StateRecord

__all__ = [
    "TOMBSTONE",
    "Action",
    "Descriptor",
    "DescriptorHandle",
    "DockformConfig",
    "Mount",
    "MountType",
    "Phase",
    "ReconciliationReport",
    "Ref",
    "ResourceKind",
    "ResourceOutcome",
    "ResourceState",
    "StateRecord",
    "ref",
]
