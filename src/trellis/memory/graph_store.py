"""Graph store for memory nodes and their relationships.

Owns node and edge identity and existence. Provides:
- Per-node atomic writes (node plus its incident edges, staged with rollback)
- Optimistic-version updates
- Breadth-first traversal with cumulative edge-weight products
- Cascading removal (edges first, then the node, then removal listeners)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from ..config import MemoryConfig
from ..errors import (
    ConflictError,
    NotFoundError,
    PartialWriteError,
    TrellisError,
    ValidationError,
)
from .backends.base import BackendAdapter
from .models import Edge, MemoryNode, Neighbor, relation_labels
from .retry import transient_policy

logger = logging.getLogger(__name__)

RemovalListener = Callable[[MemoryNode], None]


@dataclass
class TraversalResult:
    """Result of a traversal from one start node."""

    start_node_id: str
    neighbors: list[Neighbor] = field(default_factory=list)

    @property
    def nodes_by_hop(self) -> dict[int, list[str]]:
        by_hop: dict[int, list[str]] = {}
        for n in self.neighbors:
            by_hop.setdefault(n.hop, []).append(n.node_id)
        return by_hop

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "start_node_id": self.start_node_id,
            "neighbors": [
                {
                    "node_id": n.node_id,
                    "hop": n.hop,
                    "weight_product": n.weight_product,
                    "path": list(n.path),
                    "relations": list(n.relations),
                }
                for n in self.neighbors
            ],
        }


@dataclass
class StagedWrite:
    """A completed node write that can still be undone.

    Keeps what the write replaced so a failure in a later layer (the
    vector index) can restore the prior node and edges.
    """

    store: "MemoryGraphStore"
    node_id: str
    version: int
    prior: MemoryNode | None
    applied: list[Edge]
    prior_edges: dict[tuple[str, str, str], Edge]

    def rollback(self) -> bool:
        """Undo the write. Returns False if anything could not be undone."""
        return self.store._rollback(
            self.node_id,
            self.version,
            self.prior,
            self.applied,
            self.prior_edges,
        )


class MemoryGraphStore:
    """Node/edge persistence and traversal over one backend adapter."""

    def __init__(self, backend: BackendAdapter, config: MemoryConfig) -> None:
        self._backend = backend
        self._config = config
        self._retry = transient_policy(config)
        self._removal_listeners: list[RemovalListener] = []

    @property
    def backend(self) -> BackendAdapter:
        return self._backend

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Register a callback invoked after a node has been removed."""
        self._removal_listeners.append(listener)

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return self._retry.call(fn, *args, **kwargs)

    # =========================================================================
    # Nodes
    # =========================================================================

    def get(self, node_id: str) -> MemoryNode:
        """Get a node by ID. Raises NotFoundError."""
        return self._call(self._backend.get_node, node_id)

    def find(self, node_id: str) -> MemoryNode | None:
        """Get a node by ID, or None if absent."""
        try:
            return self.get(node_id)
        except NotFoundError:
            return None

    def exists(self, node_id: str) -> bool:
        return self.find(node_id) is not None

    def count(self) -> int:
        return self._call(self._backend.count_nodes)

    def node_ids(self) -> list[str]:
        return self._call(self._backend.scan_node_ids)

    def iter_nodes(self) -> Iterator[MemoryNode]:
        """Yield every stored node; nodes removed mid-scan are skipped."""
        for node_id in self.node_ids():
            node = self.find(node_id)
            if node is not None:
                yield node

    def update(self, node: MemoryNode) -> int:
        """Write a modified node guarded by its version.

        Raises:
            ConflictError: The stored version moved since node was read.
        """
        version = self._call(self._backend.put_node, node, expected_version=node.version)
        node.version = version
        return version

    def write(self, node: MemoryNode, edges: Iterable[Edge] = ()) -> "StagedWrite":
        """Atomically write a node and its incident edges.

        All edges are written or none are. Sub-writes are staged so they
        can be undone if a later step fails.

        Args:
            node: Node to write. node.version is the version the caller
                read (0 for a node expected not to exist yet).
            edges: Edges incident to node; the other endpoint must exist.

        Returns:
            A StagedWrite holding the new version (also set on node). Its
            rollback() undoes the write if a later layer fails.

        Raises:
            ValidationError: Edge not incident to node, self-loop or bad weight.
            NotFoundError: The other endpoint of an edge is missing.
            ConflictError: The node changed since it was read.
            PartialWriteError: A step after the node write failed. rolled_back
                tells whether the prior state was restored.
        """
        edges = list(edges)
        for edge in edges:
            self._validate_edge(edge)
            if not edge.touches(node.id):
                raise ValidationError(
                    f"Edge {edge.source}->{edge.target} is not incident to node {node.id}",
                    field="edges",
                    constraint="incident",
                )
            other = edge.other(node.id)
            if not self.exists(other):
                raise NotFoundError(
                    f"Edge endpoint {other} not found",
                    resource_type="node",
                    resource_id=other,
                )

        # Stage: remember what is about to be overwritten
        prior = self.find(node.id)
        prior_edges = {e.key: e for e in (self.edges_of(node.id) if prior else [])}

        version = self._call(self._backend.put_node, node, expected_version=node.version)
        applied: list[Edge] = []
        try:
            for edge in edges:
                self._call(self._backend.put_edge, edge)
                applied.append(edge)
        except TrellisError as e:
            logger.warning(
                "Edge write failed for node %s after %d/%d edges: %s",
                node.id,
                len(applied),
                len(edges),
                e,
            )
            rolled_back = self._rollback(node.id, version, prior, applied, prior_edges)
            raise PartialWriteError(
                f"Write of node {node.id} failed at edge {len(applied) + 1}/{len(edges)}",
                node_id=node.id,
                stage="edges",
                rolled_back=rolled_back,
            ) from e

        node.version = version
        logger.debug("Wrote node %s (version=%d, edges=%d)", node.id, version, len(edges))
        return StagedWrite(self, node.id, version, prior, edges, prior_edges)

    def _rollback(
        self,
        node_id: str,
        written_version: int,
        prior: MemoryNode | None,
        applied: list[Edge],
        prior_edges: dict[tuple[str, str, str], Edge],
    ) -> bool:
        """Undo staged sub-writes. Returns False if anything could not be undone."""
        try:
            for edge in reversed(applied):
                previous = prior_edges.get(edge.key)
                if previous is not None:
                    self._call(self._backend.put_edge, previous)
                else:
                    self._call(self._backend.delete_edge, *edge.key)
            if prior is not None:
                self._call(self._backend.put_node, prior, expected_version=written_version)
            else:
                self._call(self._backend.delete_edges_of, node_id)
                self._call(self._backend.delete_node, node_id, expected_version=written_version)
        except TrellisError as e:
            logger.error("Rollback failed for node %s: %s", node_id, e)
            return False
        logger.debug("Rolled back write of node %s", node_id)
        return True

    def remove(self, node_id: str, *, expected_version: int | None = None) -> list[Edge]:
        """Remove a node and cascade deletion to every incident edge.

        Args:
            node_id: Node to remove.
            expected_version: If given, removal fails with ConflictError when
                the node changed since that version was read.

        Returns:
            The edges that were removed.
        """
        node = self.get(node_id)
        if expected_version is not None and node.version != expected_version:
            raise ConflictError(
                f"Node {node_id} version changed (expected {expected_version}, found {node.version})",
                node_id=node_id,
                expected_version=expected_version,
                actual_version=node.version,
            )

        edges = self.edges_of(node_id)
        self._call(self._backend.delete_edges_of, node_id)
        try:
            self._call(self._backend.delete_node, node_id, expected_version=node.version)
        except TrellisError:
            # Node changed (or vanished) between check and delete: restore edges
            for edge in edges:
                try:
                    self._call(self._backend.put_edge, edge)
                except TrellisError as restore_error:
                    logger.error(
                        "Failed to restore edge %s->%s for node %s: %s",
                        edge.source,
                        edge.target,
                        node_id,
                        restore_error,
                    )
            raise

        logger.debug("Removed node %s and %d edges", node_id, len(edges))
        for listener in self._removal_listeners:
            try:
                listener(node)
            except TrellisError as e:
                logger.warning("Removal listener failed for node %s: %s", node_id, e)
        return edges

    # =========================================================================
    # Edges
    # =========================================================================

    def add_edge(self, edge: Edge) -> None:
        """Insert or replace an edge between two existing nodes."""
        self._validate_edge(edge)
        self._call(self._backend.put_edge, edge)
        logger.debug(
            "Linked %s -[%s]-> %s (weight=%.3f, directed=%s)",
            edge.source,
            edge.relation,
            edge.target,
            edge.weight,
            edge.directed,
        )

    def remove_edge(self, source: str, target: str, relation: str) -> bool:
        return self._call(self._backend.delete_edge, source, target, relation)

    def edges_of(self, node_id: str) -> list[Edge]:
        """All edges incident to a node."""
        return self._call(self._backend.get_edges, node_id)

    def weighted_degree(self, node_id: str) -> float:
        """Sum of incident edge weights."""
        return sum(edge.weight for edge in self.edges_of(node_id))

    def max_incident_weight(self, node_id: str) -> float:
        return max((edge.weight for edge in self.edges_of(node_id)), default=0.0)

    @staticmethod
    def _validate_edge(edge: Edge) -> None:
        if edge.source == edge.target:
            raise ValidationError(
                "Cannot create self-referential edge",
                field="edge",
                value=edge.source,
            )
        if not isinstance(edge.weight, (int, float)) or not math.isfinite(edge.weight) or edge.weight <= 0:
            raise ValidationError(
                "Edge weight must be a positive finite number",
                field="weight",
                value=edge.weight,
            )

    # =========================================================================
    # Graph Traversal
    # =========================================================================

    def neighbors(
        self,
        node_id: str,
        depth: int,
        *,
        relation_filter: Iterable[str] | None = None,
    ) -> list[Neighbor]:
        """Breadth-first expansion up to depth hops.

        Each reached node is annotated with its hop distance and the best
        cumulative edge-weight product among shortest paths. The start node
        is never returned and no node is visited twice.
        """
        if depth <= 0:
            return []
        relations = relation_labels(relation_filter)

        visited = {node_id}
        frontier: dict[str, Neighbor] = {
            node_id: Neighbor(node_id=node_id, hop=0, weight_product=1.0, path=[node_id])
        }
        reached: list[Neighbor] = []

        for hop in range(1, depth + 1):
            next_level: dict[str, Neighbor] = {}
            for current_id, current in frontier.items():
                edges = self._call(self._backend.neighbors, current_id, relations, 1)
                for edge in edges:
                    other = edge.other(current_id)
                    if other in visited:
                        continue
                    product = current.weight_product * edge.weight
                    best = next_level.get(other)
                    if best is None or product > best.weight_product:
                        next_level[other] = Neighbor(
                            node_id=other,
                            hop=hop,
                            weight_product=product,
                            path=[*current.path, other],
                            relations=[*current.relations, edge.relation],
                        )
            if not next_level:
                break
            visited.update(next_level)
            reached.extend(next_level.values())
            frontier = next_level

        return reached

    def traverse(
        self,
        start_id: str,
        *,
        max_depth: int = 2,
        relation_filter: Iterable[str] | None = None,
    ) -> TraversalResult:
        """Traverse from a start node and package the result."""
        return TraversalResult(
            start_node_id=start_id,
            neighbors=self.neighbors(start_id, max_depth, relation_filter=relation_filter),
        )


__all__ = ["MemoryGraphStore", "RemovalListener", "StagedWrite", "TraversalResult"]
