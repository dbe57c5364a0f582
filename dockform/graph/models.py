"""Data structures for the resource dependency graph."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class EdgeType(StrEnum):
    """Why one resource depends on another."""

    IMAGE = "image"
    NETWORK = "network"
    VOLUME = "volume"
    CONFIG_REFERENCE = "config_reference"
    EXPLICIT = "explicit"
    RECORDED = "recorded"  # edge restored from a persisted state record


_FIELD_EDGE_TYPES: dict[str, EdgeType] = {
    "image": EdgeType.IMAGE,
    "networking": EdgeType.NETWORK,
    "volumes": EdgeType.VOLUME,
}


def edge_type_for(field: str) -> EdgeType:
    return _FIELD_EDGE_TYPES.get(field, EdgeType.CONFIG_REFERENCE)


@dataclass(frozen=True)
class GraphEdge:
    """``source`` depends on ``target``."""

    source: str
    target: str
    edge_type: EdgeType
    source_field: str = ""  # config option that creates this relationship

    @property
    def embeds_identity(self) -> bool:
        """The source's config carries the target's physical ID."""
        return self.edge_type not in (EdgeType.EXPLICIT, EdgeType.RECORDED)
