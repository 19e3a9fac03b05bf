"""Per-facet nearest-neighbor index.

Holds a non-owning copy of node id → facet vectors. Each facet may live on
its own backend. Query vectors are validated against the VectorSpace
registry before any backend call is dispatched.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Sequence

import numpy as np

from ..config import MemoryConfig
from ..errors import ValidationError
from .backends.base import BackendAdapter
from .models import MemoryNode
from .registry import VectorSpaceRegistry
from .retry import transient_policy

logger = logging.getLogger(__name__)


class VectorIndex:
    """Facet-keyed vector search over one or more backend adapters."""

    def __init__(
        self,
        registry: VectorSpaceRegistry,
        default_backend: BackendAdapter,
        config: MemoryConfig,
        facet_backends: Mapping[str, BackendAdapter] | None = None,
    ) -> None:
        self._registry = registry
        self._default = default_backend
        self._facet_backends = dict(facet_backends or {})
        self._config = config
        self._retry = transient_policy(config)

    @property
    def registry(self) -> VectorSpaceRegistry:
        return self._registry

    def backend_for(self, facet: str) -> BackendAdapter:
        return self._facet_backends.get(facet, self._default)

    def backends(self) -> list[BackendAdapter]:
        """Distinct backends used by the index."""
        unique: dict[int, BackendAdapter] = {id(self._default): self._default}
        for backend in self._facet_backends.values():
            unique.setdefault(id(backend), backend)
        return list(unique.values())

    def _group(self, facets: Iterable[str]) -> dict[int, tuple[BackendAdapter, list[str]]]:
        groups: dict[int, tuple[BackendAdapter, list[str]]] = {}
        for facet in facets:
            backend = self.backend_for(facet)
            groups.setdefault(id(backend), (backend, []))[1].append(facet)
        return groups

    # =========================================================================
    # Writes
    # =========================================================================

    def index(
        self,
        node: MemoryNode,
        *,
        previous_facets: Iterable[str] = (),
        track_usage: bool = True,
    ) -> None:
        """Write a node's vectors, dropping facets it no longer has.

        Args:
            node: Node whose vectors to index (already validated).
            previous_facets: Facets indexed for this node before this write.
            track_usage: False when restoring vectors during a rollback.
        """
        previous = set(previous_facets)
        current = set(node.vectors)

        for backend, facets in self._group(sorted(current)).values():
            self._retry.call(
                backend.upsert_vectors,
                node.id,
                {facet: node.vectors[facet] for facet in facets},
            )

        dropped = previous - current
        if dropped:
            self.remove(node.id, dropped, track_usage=track_usage)

        if track_usage:
            self._registry.mark_indexed(current - previous)
        logger.debug("Indexed node %s (facets=%s)", node.id, sorted(current))

    def remove(
        self,
        node_id: str,
        facets: Iterable[str] | None = None,
        *,
        track_usage: bool = True,
    ) -> int:
        """Remove a node's vectors for the given facets (default: all backends).

        track_usage=False leaves facet usage counts alone (rollback of a
        write that never completed).
        """
        removed = 0
        if facets is None:
            for backend in self.backends():
                removed += self._retry.call(backend.delete_vectors, node_id, None)
            return removed

        facets = list(facets)
        for backend, names in self._group(facets).values():
            removed += self._retry.call(backend.delete_vectors, node_id, names)
        if track_usage:
            self._registry.mark_removed(facets)
        return removed

    def on_node_removed(self, node: MemoryNode) -> None:
        """Graph store removal listener: drop the node's vectors."""
        self.remove(node.id, node.vectors.keys())
        logger.debug("Dropped vectors for removed node %s", node.id)

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        facet: str,
        query: Sequence[float] | np.ndarray,
        k: int,
    ) -> list[tuple[str, float]]:
        """Nearest neighbors for one facet.

        Returns:
            Up to k (node_id, similarity) pairs, similarity in [0, 1],
            ordered by descending similarity.

        Raises:
            ValidationError: Unknown facet or k < 1.
            DimensionMismatchError: Query length differs from the facet's.
            BackendUnavailableError: Backend still failing after retries.
        """
        if k < 1:
            raise ValidationError("k must be >= 1", field="k", value=k)
        vec = self._registry.validate(facet, query)
        results = self._retry.call(self.backend_for(facet).vector_search, facet, vec, k)
        threshold = self._config.semantic_threshold
        # Zero similarity is no match, whatever the threshold
        return [(node_id, sim) for node_id, sim in results if sim > 0.0 and sim >= threshold][:k]

    def facet_counts(self) -> dict[str, int]:
        """Registered facets and how many nodes use each."""
        return {facet: self._registry.usage(facet) for facet in self._registry.facets()}


__all__ = ["VectorIndex"]
