"""In-memory reference backend.

Dictionaries guarded by one re-entrant lock. Stored nodes are copied on the
way in and on the way out so callers never share mutable state with the
store.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Iterable, Mapping

import numpy as np

from ...errors import ConflictError, NotFoundError
from ..models import Edge, MemoryNode
from ..vectors import top_k_similar
from .base import expand_edges

logger = logging.getLogger(__name__)


class InMemoryBackend:
    """Reference BackendAdapter keeping everything in process memory."""

    kind = "memory"

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._nodes: dict[str, MemoryNode] = {}
        self._edges: dict[tuple[str, str, str], Edge] = {}
        self._incident: defaultdict[str, set[tuple[str, str, str]]] = defaultdict(set)
        self._vectors: defaultdict[str, dict[str, np.ndarray]] = defaultdict(dict)
        self._lock = threading.RLock()

    # =========================================================================
    # Nodes
    # =========================================================================

    def put_node(self, node: MemoryNode, *, expected_version: int | None = None) -> int:
        with self._lock:
            current = self._nodes.get(node.id)
            current_version = current.version if current is not None else 0
            _check_version(node.id, expected_version, current_version)

            stored = node.copy()
            stored.version = current_version + 1
            self._nodes[node.id] = stored
            return stored.version

    def get_node(self, node_id: str) -> MemoryNode:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NotFoundError(
                    f"Node {node_id} not found",
                    resource_type="node",
                    resource_id=node_id,
                )
            return node.copy()

    def delete_node(self, node_id: str, *, expected_version: int | None = None) -> None:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NotFoundError(
                    f"Node {node_id} not found",
                    resource_type="node",
                    resource_id=node_id,
                )
            _check_version(node_id, expected_version, node.version)
            del self._nodes[node_id]

    def scan_node_ids(self) -> list[str]:
        with self._lock:
            return list(self._nodes)

    def count_nodes(self) -> int:
        with self._lock:
            return len(self._nodes)

    # =========================================================================
    # Edges
    # =========================================================================

    def put_edge(self, edge: Edge) -> None:
        with self._lock:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self._nodes:
                    raise NotFoundError(
                        f"Edge endpoint {endpoint} not found",
                        resource_type="node",
                        resource_id=endpoint,
                    )
            self._edges[edge.key] = edge
            self._incident[edge.source].add(edge.key)
            self._incident[edge.target].add(edge.key)

    def delete_edge(self, source: str, target: str, relation: str) -> bool:
        key = (source, target, getattr(relation, "value", relation))
        with self._lock:
            edge = self._edges.pop(key, None)
            if edge is None:
                return False
            self._incident[edge.source].discard(key)
            self._incident[edge.target].discard(key)
            return True

    def delete_edges_of(self, node_id: str) -> int:
        with self._lock:
            keys = list(self._incident.pop(node_id, set()))
            for key in keys:
                edge = self._edges.pop(key, None)
                if edge is not None:
                    self._incident[edge.other(node_id)].discard(key)
            return len(keys)

    def get_edges(self, node_id: str) -> list[Edge]:
        with self._lock:
            keys = sorted(self._incident.get(node_id, ()))
            return [self._edges[key] for key in keys]

    def neighbors(
        self,
        node_id: str,
        relation_filter: Iterable[str] | None = None,
        max_depth: int = 1,
    ) -> list[Edge]:
        with self._lock:
            return expand_edges(self.get_edges, node_id, relation_filter, max_depth)

    # =========================================================================
    # Vectors
    # =========================================================================

    def vector_search(self, facet: str, query: np.ndarray, k: int) -> list[tuple[str, float]]:
        with self._lock:
            candidates = list(self._vectors.get(facet, {}).items())
        return top_k_similar(query, candidates, k)

    def upsert_vectors(self, node_id: str, vectors: Mapping[str, np.ndarray]) -> None:
        with self._lock:
            for facet, vec in vectors.items():
                self._vectors[facet][node_id] = np.array(vec, dtype=np.float32)

    def delete_vectors(self, node_id: str, facets: Iterable[str] | None = None) -> int:
        with self._lock:
            names = list(self._vectors) if facets is None else list(facets)
            removed = 0
            for facet in names:
                if self._vectors.get(facet, {}).pop(node_id, None) is not None:
                    removed += 1
            return removed

    # =========================================================================
    # Bulk / lifecycle
    # =========================================================================

    def batch_put(self, nodes: Iterable[MemoryNode], edges: Iterable[Edge] = ()) -> list[int]:
        nodes = list(nodes)
        edges = list(edges)
        with self._lock:
            known = set(self._nodes) | {node.id for node in nodes}
            for edge in edges:
                for endpoint in (edge.source, edge.target):
                    if endpoint not in known:
                        raise NotFoundError(
                            f"Edge endpoint {endpoint} not found",
                            resource_type="node",
                            resource_id=endpoint,
                        )
            versions = [self.put_node(node) for node in nodes]
            for edge in edges:
                self.put_edge(edge)
            return versions

    def close(self) -> None:
        logger.debug("Closed in-memory backend %s", self.name)


def _check_version(node_id: str, expected: int | None, actual: int) -> None:
    if expected is not None and expected != actual:
        raise ConflictError(
            f"Node {node_id} version changed (expected {expected}, found {actual})",
            node_id=node_id,
            expected_version=expected,
            actual_version=actual,
        )


__all__ = ["InMemoryBackend"]
