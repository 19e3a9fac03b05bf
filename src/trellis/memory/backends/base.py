"""Backend adapter capability surface.

Every storage technology implements the same contract, so the graph store
and vector index never depend on a concrete backend. Adapters raise only
Trellis errors:

- NotFoundError: node or edge absent
- ConflictError: expected_version does not match the stored version
- BackendUnavailableError: transient storage failure

Node records carry their own facet vectors (needed for diversification);
the separate vector table written with upsert_vectors() is the searchable
copy owned by the vector index.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Iterable, Mapping, Protocol, runtime_checkable

import numpy as np

from ..models import Edge, MemoryNode, relation_labels


@runtime_checkable
class BackendAdapter(Protocol):
    """Uniform capability interface over a concrete storage technology."""

    kind: str

    # Nodes
    def put_node(self, node: MemoryNode, *, expected_version: int | None = None) -> int:
        """Insert or replace a node; returns the new stored version."""
        ...

    def get_node(self, node_id: str) -> MemoryNode:
        """Return a copy of the stored node. Raises NotFoundError."""
        ...

    def delete_node(self, node_id: str, *, expected_version: int | None = None) -> None:
        """Delete the node record only; edges are removed by delete_edges_of()."""
        ...

    def scan_node_ids(self) -> list[str]:
        """All node ids, oldest first."""
        ...

    def count_nodes(self) -> int:
        ...

    # Edges
    def put_edge(self, edge: Edge) -> None:
        """Insert or replace an edge. Raises NotFoundError if an endpoint is missing."""
        ...

    def delete_edge(self, source: str, target: str, relation: str) -> bool:
        ...

    def delete_edges_of(self, node_id: str) -> int:
        """Delete every edge incident to node_id; returns the count removed."""
        ...

    def get_edges(self, node_id: str) -> list[Edge]:
        """Every edge incident to node_id, in either direction."""
        ...

    def neighbors(
        self,
        node_id: str,
        relation_filter: Iterable[str] | None = None,
        max_depth: int = 1,
    ) -> list[Edge]:
        """Traversable edges reachable from node_id within max_depth hops."""
        ...

    # Vectors
    def vector_search(self, facet: str, query: np.ndarray, k: int) -> list[tuple[str, float]]:
        """Up to k (node_id, similarity in [0, 1]) pairs, best first."""
        ...

    def upsert_vectors(self, node_id: str, vectors: Mapping[str, np.ndarray]) -> None:
        ...

    def delete_vectors(self, node_id: str, facets: Iterable[str] | None = None) -> int:
        ...

    # Bulk / lifecycle
    def batch_put(self, nodes: Iterable[MemoryNode], edges: Iterable[Edge] = ()) -> list[int]:
        """Write many nodes then edges; returns new node versions in order."""
        ...

    def close(self) -> None:
        ...


def expand_edges(
    get_edges: Callable[[str], list[Edge]],
    node_id: str,
    relation_filter: Iterable[str] | None,
    max_depth: int,
) -> list[Edge]:
    """Breadth-first collection of traversable edges around node_id.

    Shared by adapters that have no native traversal. Each edge is returned
    once; nodes are expanded once.
    """
    labels = relation_labels(relation_filter)
    relations = set(labels) if labels is not None else None
    seen_nodes = {node_id}
    seen_edges: set[tuple[str, str, str]] = set()
    found: list[Edge] = []
    queue: deque[tuple[str, int]] = deque([(node_id, 0)])

    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for edge in get_edges(current):
            if not edge.traversable_from(current):
                continue
            if relations is not None and edge.relation not in relations:
                continue
            if edge.key not in seen_edges:
                seen_edges.add(edge.key)
                found.append(edge)
            other = edge.other(current)
            if other not in seen_nodes:
                seen_nodes.add(other)
                queue.append((other, depth + 1))
    return found


__all__ = ["BackendAdapter", "expand_edges"]
