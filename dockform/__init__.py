"""dockform - declarative Docker resources reconciled against tracked state."""

from dockform.app import App
from dockform.errors import (
    ConfigurationError,
    CyclicDependency,
    DockformError,
    DuplicateLogicalId,
    InvalidOption,
    InvalidReference,
    ReconciliationFailed,
    RuntimeRejected,
    RuntimeUnavailable,
    SessionClosed,
    StoreLocked,
    UnresolvedReference,
)
from dockform.models import (
    Action,
    DescriptorHandle,
    Mount,
    Phase,
    ReconciliationReport,
    ResourceKind,
    ref,
)

__version__ = "0.1.0"

__all__ = [
    "Action",
    "App",
    "ConfigurationError",
    "CyclicDependency",
    "DescriptorHandle",
    "DockformError",
    "DuplicateLogicalId",
    "InvalidOption",
    "InvalidReference",
    "Mount",
    "Phase",
    "ReconciliationFailed",
    "ReconciliationReport",
    "ResourceKind",
    "RuntimeRejected",
    "RuntimeUnavailable",
    "SessionClosed",
    "StoreLocked",
    "UnresolvedReference",
    "__version__",
    "ref",
]
