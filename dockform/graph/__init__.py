"""Resource dependency graph.

Built from declared descriptors (references found in config plus explicit
``depends_on``) or from persisted state records, and used to derive the
creation order and its exact reverse for deletion.
"""

from dockform.graph.dependency_graph import DependencyGraph
from dockform.graph.models import EdgeType, GraphEdge

__all__ = [
    "DependencyGraph",
    "EdgeType",
    "GraphEdge",
]
