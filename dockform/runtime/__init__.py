"""Container runtime clients.

Submodules:
    base   -- RuntimeClient interface, ResolvedResource, PhysicalState.
    docker -- DockerRuntimeClient on top of the docker SDK.
"""

from dockform.runtime.base import (
    LABEL_APP,
    LABEL_CONFIG_HASH,
    LABEL_LOGICAL_ID,
    PhysicalState,
    ResolvedResource,
    RuntimeClient,
    UpdatePolicy,
)

__all__ = [
    "LABEL_APP",
    "LABEL_CONFIG_HASH",
    "LABEL_LOGICAL_ID",
    "PhysicalState",
    "ResolvedResource",
    "RuntimeClient",
    "UpdatePolicy",
]
