"""Dependency graph over declared (or recorded) resources.

Nodes are logical IDs.  An edge ``a -> b`` means *a depends on b*, so *b*
must exist before *a* is created and must outlive it on deletion.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from dockform.errors import CyclicDependency, InvalidReference, UnresolvedReference
from dockform.graph.models import EdgeType, GraphEdge, edge_type_for
from dockform.models.resources import Descriptor, ResourceKind
from dockform.models.state import StateRecord
from dockform.observability.logging import get_logger
from dockform.schema import REFERENCE_KINDS

_logger = get_logger("graph")


class DependencyGraph:
    """Directed acyclic graph of resource dependencies.

    Build with ``from_descriptors`` (strict: every dependency must be
    declared) or ``from_records`` (lenient: edges leaving the record set are
    dropped).  Ordering is deterministic for a given node set.
    """

    def __init__(self, kinds: Mapping[str, ResourceKind], edges: Iterable[GraphEdge] = ()) -> None:
        self._kinds: dict[str, ResourceKind] = dict(kinds)
        self._edges: list[GraphEdge] = []
        self._deps: dict[str, set[str]] = {node: set() for node in self._kinds}
        self._rdeps: dict[str, set[str]] = {node: set() for node in self._kinds}
        self._order: list[str] | None = None
        for edge in edges:
            self._add_edge(edge)

    def _add_edge(self, edge: GraphEdge) -> None:
        self._edges.append(edge)
        self._deps[edge.source].add(edge.target)
        self._rdeps[edge.target].add(edge.source)
        self._order = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[Descriptor]) -> DependencyGraph:
        """Build the graph of a session's declarations.

        Raises:
            UnresolvedReference: a dependency names an undeclared logical ID.
            InvalidReference: a reference targets a resource of the wrong kind.
            CyclicDependency: the declarations form a cycle.
        """
        by_id = {d.logical_id: d for d in descriptors}
        kinds = {lid: d.kind for lid, d in by_id.items()}
        edges: list[GraphEdge] = []

        for descriptor in by_id.values():
            referenced: set[str] = set()
            for field, reference in descriptor.references:
                target = by_id.get(reference.logical_id)
                if target is None:
                    raise UnresolvedReference(descriptor.logical_id, reference.logical_id)
                expected = REFERENCE_KINDS.get((descriptor.kind, field)) or reference.kind
                if expected is not None and target.kind != expected:
                    raise InvalidReference(
                        descriptor.logical_id,
                        field,
                        target.logical_id,
                        expected.value,
                        target.kind.value,
                    )
                if reference.logical_id not in referenced:
                    referenced.add(reference.logical_id)
                    edges.append(
                        GraphEdge(
                            source=descriptor.logical_id,
                            target=reference.logical_id,
                            edge_type=edge_type_for(field),
                            source_field=field,
                        )
                    )
            for dependency in sorted(descriptor.depends_on - referenced):
                if dependency not in by_id:
                    raise UnresolvedReference(descriptor.logical_id, dependency)
                edges.append(GraphEdge(descriptor.logical_id, dependency, EdgeType.EXPLICIT))

        graph = cls(kinds, edges)
        graph.creation_order()  # surfaces cycles eagerly
        _logger.debug("dependency graph built", nodes=graph.node_count, edges=graph.edge_count)
        return graph

    @classmethod
    def from_records(cls, records: Mapping[str, StateRecord]) -> DependencyGraph:
        """Build a graph from persisted records, ignoring edges to unknown IDs."""
        kinds = {lid: record.kind for lid, record in records.items()}
        edges = [
            GraphEdge(lid, dependency, EdgeType.RECORDED)
            for lid, record in records.items()
            for dependency in sorted(set(record.depends_on))
            if dependency in records and dependency != lid
        ]
        return cls(kinds, edges)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def node_count(self) -> int:
        return len(self._kinds)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    @property
    def edges(self) -> list[GraphEdge]:
        return list(self._edges)

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self._kinds

    def __len__(self) -> int:
        return len(self._kinds)

    def kind(self, logical_id: str) -> ResourceKind:
        return self._kinds[logical_id]

    def dependencies(self, logical_id: str) -> frozenset[str]:
        return frozenset(self._deps[logical_id])

    def dependents(self, logical_id: str) -> frozenset[str]:
        return frozenset(self._rdeps[logical_id])

    def edges_from(self, logical_id: str) -> list[GraphEdge]:
        """Edges whose source is *logical_id*, in declaration order."""
        return [edge for edge in self._edges if edge.source == logical_id]

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def creation_order(self) -> list[str]:
        """Topological order: every node after all of its dependencies.

        Raises:
            CyclicDependency: naming the cycle's logical IDs in path order.
        """
        if self._order is not None:
            return list(self._order)

        order: list[str] = []
        done: set[str] = set()
        path: list[str] = []
        on_path: set[str] = set()

        def visit(node: str) -> None:
            if node in done:
                return
            if node in on_path:
                start = path.index(node)
                raise CyclicDependency([*path[start:], node])
            path.append(node)
            on_path.add(node)
            for dependency in sorted(self._deps[node]):
                visit(dependency)
            path.pop()
            on_path.discard(node)
            done.add(node)
            order.append(node)

        for node in sorted(self._kinds):
            visit(node)

        self._order = order
        return list(order)

    def deletion_order(self) -> list[str]:
        """Exact reverse of ``creation_order``: dependents first."""
        return list(reversed(self.creation_order()))
