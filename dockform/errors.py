"""Error taxonomy for dockform.

ConfigurationError  -- caller mistakes detected before any runtime call.
RuntimeClientError  -- failures reported by the container runtime.
StoreError          -- state store conflicts and unreadable state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dockform.models.report import ReconciliationReport


class DockformError(Exception):
    """Base class for every error raised by dockform."""


# ---------------------------------------------------------------------------
# Configuration errors (eager, zero side effects)
# ---------------------------------------------------------------------------


class ConfigurationError(DockformError):
    """The declaration is invalid; nothing was applied."""


class CyclicDependency(ConfigurationError):
    """The declared resources form a dependency cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Cyclic dependency: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnresolvedReference(ConfigurationError):
    """A descriptor depends on a logical ID that was never declared."""

    def __init__(self, logical_id: str, missing: str) -> None:
        super().__init__(f"Resource '{logical_id}' depends on undeclared resource '{missing}'")
        self.logical_id = logical_id
        self.missing = missing


class InvalidReference(ConfigurationError):
    """A reference points at a resource of the wrong kind."""

    def __init__(self, logical_id: str, field: str, target: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Resource '{logical_id}' field '{field}' references '{target}' "
            f"which is a {actual}, expected {expected}"
        )
        self.logical_id = logical_id
        self.field = field
        self.target = target


class DuplicateLogicalId(ConfigurationError):
    """The same logical ID was declared twice in one session."""

    def __init__(self, logical_id: str) -> None:
        super().__init__(f"Resource '{logical_id}' is already declared in this session")
        self.logical_id = logical_id


class InvalidOption(ConfigurationError):
    """An option is unknown for the resource kind or has an invalid value."""

    def __init__(self, logical_id: str, option: str, reason: str) -> None:
        super().__init__(f"Resource '{logical_id}' option '{option}': {reason}")
        self.logical_id = logical_id
        self.option = option
        self.reason = reason


class SessionClosed(DockformError):
    """The session was already finalized or closed."""


# ---------------------------------------------------------------------------
# Runtime errors
# ---------------------------------------------------------------------------


class RuntimeClientError(DockformError):
    """Base class for errors raised by a RuntimeClient."""

    def __init__(self, message: str, logical_id: str | None = None) -> None:
        super().__init__(message)
        self.logical_id = logical_id


class RuntimeUnavailable(RuntimeClientError):
    """The runtime could not be reached. Retrying the whole run is safe."""


class RuntimeRejected(RuntimeClientError):
    """The runtime refused the operation as invalid. Not retried."""


class RequiresRecreate(RuntimeClientError):
    """An in-place update is impossible; the resource must be recreated."""


class DriftDetected(RuntimeClientError):
    """The recorded physical resource no longer exists."""


# ---------------------------------------------------------------------------
# State store errors
# ---------------------------------------------------------------------------


class StoreError(DockformError):
    """Base class for state store failures."""


class StoreLocked(StoreError):
    """Another session holds the store lock."""

    def __init__(self, app: str, holder: str = "") -> None:
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"State store for app '{app}' is locked by another session{detail}")
        self.app = app


class StateCorrupted(StoreError):
    """The persisted state cannot be read."""


# ---------------------------------------------------------------------------
# Run outcome
# ---------------------------------------------------------------------------


class RunCancelled(DockformError):
    """The run was cancelled before this resource was started."""


class IllegalTransition(DockformError):
    """A resource moved between reconciliation states in an invalid order."""


class ReconciliationFailed(DockformError):
    """At least one resource failed; the report tells what was applied."""

    def __init__(self, report: ReconciliationReport) -> None:
        failed = ", ".join(o.logical_id for o in report.failed)
        super().__init__(f"Reconciliation of '{report.app}' failed for: {failed}")
        self.report = report
