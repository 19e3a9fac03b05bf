"""MemoryEngine: the public ingest / query / prune surface.

Wires the storage layers together:
- Graph store on the configured graph backend (owns node/edge existence)
- Vector index over one adapter per facet (non-owning copy of vectors)
- Importance scorer, MMR selector, retrieval orchestrator, pruner

Write path: validate → initial score → graph write (node + edges) →
vector index write. A failure after the graph write is rolled back; if the
rollback fails too, the node is quarantined.

Read path: retrieval orchestrator → reinforcement of returned hits.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence
from uuid import uuid4

import numpy as np

from ..config import MemoryConfig
from ..errors import (
    ConfigurationError,
    NotFoundError,
    PartialWriteError,
    TrellisError,
    ValidationError,
)
from .backends import BackendAdapter, create_backend
from .embeddings import EmbeddingProvider, embed_facets
from .graph_store import MemoryGraphStore
from .mmr import MMRSelector
from .models import Edge, MemoryNode, Relation, utcnow
from .pruner import PruneReport, Pruner
from .registry import VectorSpaceRegistry
from .retriever import MemoryBundle, RetrievalOrchestrator
from .retry import conflict_policy
from .scoring import Clock, ImportanceScorer
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

VectorMap = Mapping[str, Sequence[float] | np.ndarray]


def _new_node_id() -> str:
    return uuid4().hex[:12]


class MemoryEngine:
    """Hybrid vector + graph memory.

    Usage:
        config = MemoryConfig(
            scorer_weights={"recency": 0.5, "usage": 0.3, "centrality": 0.2},
            recency_half_life=7 * 86400,
            facet_dimensions={"topic": 384},
        )
        with MemoryEngine(config) as engine:
            node_id = engine.ingest("Paris is in France", {"topic": vec})
            bundle = engine.query({"topic": query_vec}, k=5)
    """

    def __init__(
        self,
        config: MemoryConfig,
        *,
        embedding_provider: EmbeddingProvider | None = None,
        clock: Clock = utcnow,
        adapters: Mapping[str, BackendAdapter] | None = None,
        facet_backends: Mapping[str, BackendAdapter] | None = None,
    ) -> None:
        """Open an engine.

        Args:
            config: Engine configuration.
            embedding_provider: Used by ingest_text/query_text.
            clock: Source of "now" (injectable for tests).
            adapters: Pre-built adapters by backend kind, used instead of
                creating new ones.
            facet_backends: Pre-built adapters for specific facets.
        """
        self.config = config
        self._clock = clock
        self._embedding_provider = embedding_provider
        self._adapters: dict[str, BackendAdapter] = dict(adapters or {})

        graph_backend = self._adapter(config.graph_backend)
        default_vector_backend = self._adapter(config.default_vector_backend)
        per_facet = {facet: self._adapter(kind) for facet, kind in config.vector_backends.items()}
        per_facet.update(facet_backends or {})
        self._extra_backends = list((facet_backends or {}).values())

        self.registry = VectorSpaceRegistry(config.facet_dimensions)
        self.graph = MemoryGraphStore(graph_backend, config)
        self.index = VectorIndex(self.registry, default_vector_backend, config, per_facet)
        self.scorer = ImportanceScorer(config.scorer_weights, config.recency_half_life, clock=clock)
        self.selector = MMRSelector(config.mmr_lambda)
        self.retriever = RetrievalOrchestrator(self.graph, self.index, self.selector, config)
        self.pruner = Pruner(self.graph, self.scorer, config)
        self._conflict = conflict_policy(config)

        self.graph.add_removal_listener(self.index.on_node_removed)
        self._load_existing()
        self._closed = False
        logger.info(
            "Memory engine opened (graph=%s, vectors=%s, facets=%s)",
            config.graph_backend,
            config.default_vector_backend,
            self.registry.facets(),
        )

    def _adapter(self, kind: str) -> BackendAdapter:
        """One adapter per backend kind, shared by every store that uses it."""
        if kind not in self._adapters:
            self._adapters[kind] = create_backend(kind, path=self.config.sqlite_path)
        return self._adapters[kind]

    def _load_existing(self) -> None:
        """Seed facet usage and scorer maxima from nodes already stored."""
        max_access = 0
        max_degree = 0.0
        count = 0
        for node in self.graph.iter_nodes():
            for facet, vec in node.vectors.items():
                if facet not in self.registry:
                    self.registry.register(facet, int(vec.shape[0]))
            self.registry.mark_indexed(node.facets)
            max_access = max(max_access, node.access_count)
            max_degree = max(max_degree, self.graph.weighted_degree(node.id))
            count += 1
        if count:
            self.scorer.reset_maxima(max_access, max_degree)
            logger.info("Loaded %d existing memories", count)

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(
        self,
        content: str,
        facet_vectors: VectorMap,
        metadata: Mapping[str, Any] | None = None,
        *,
        node_id: str | None = None,
        edges: Iterable[Edge] = (),
        importance: float | None = None,
    ) -> str:
        """Store a memory (or update one in place when node_id exists).

        Args:
            content: Text of the memory.
            facet_vectors: Embedding per facet; facets must be registered.
            metadata: Arbitrary metadata.
            node_id: Explicit id. Required when passing edges.
            edges: Edges incident to this node, written atomically with it.
            importance: Initial importance, overriding the scorer.

        Returns:
            The node id.

        Raises:
            ValidationError: Bad content, facet or dimension.
            NotFoundError: An edge endpoint does not exist.
            PartialWriteError: The write failed part way (see rolled_back
                and quarantined).
        """
        if not isinstance(content, str):
            raise ValidationError("Content must be a string", field="content", value=content)
        vectors = self.registry.validate_all(facet_vectors)
        if importance is not None and (
            isinstance(importance, bool)
            or not isinstance(importance, (int, float, np.floating))
            or not np.isfinite(importance)
        ):
            raise ValidationError("Importance must be a finite number", field="importance", value=importance)
        edges = list(edges)
        if node_id is None:
            if edges:
                raise ValidationError(
                    "Pass node_id when ingesting with edges",
                    field="node_id",
                    constraint="required with edges",
                )
            node_id = _new_node_id()

        self._conflict.call(
            self._write,
            node_id,
            content,
            vectors,
            dict(metadata or {}),
            edges,
            importance,
        )

        max_memories = self.config.max_memories
        if max_memories is not None and self.graph.count() > max_memories:
            logger.info("Memory count above %d; triggering early prune", max_memories)
            if self.pruner.is_running:
                self.pruner.trigger()
            else:
                self.pruner.sweep()
        return node_id

    def _write(
        self,
        node_id: str,
        content: str,
        vectors: dict[str, np.ndarray],
        metadata: dict[str, Any],
        edges: list[Edge],
        importance: float | None,
    ) -> None:
        """One attempt at the per-node atomic write. Raises ConflictError to retry."""
        existing = self.graph.find(node_id)
        degree = sum(edge.weight for edge in edges)

        if existing is not None:
            node = existing.copy()
            node.content = content
            node.vectors = vectors
            node.metadata = metadata
            node.quarantined = False
            if importance is not None:
                node.importance = _clamp(importance)
            previous_facets = existing.facets
        else:
            node = MemoryNode(
                id=node_id,
                content=content,
                vectors=vectors,
                metadata=metadata,
                created_at=self.now(),
            )
            if importance is not None:
                node.importance = _clamp(importance)
            else:
                node.importance = self.scorer.initial(node, degree)
            previous_facets = frozenset()

        try:
            staged = self.graph.write(node, edges)
        except PartialWriteError as e:
            if not e.rolled_back:
                e.quarantined = self._quarantine(node_id)
                e.context["quarantined"] = e.quarantined
            raise

        try:
            self.index.index(node, previous_facets=previous_facets)
        except TrellisError as e:
            logger.warning("Vector write failed for node %s: %s", node_id, e)
            rolled_back = self._undo_vectors(node, existing) and staged.rollback()
            quarantined = False if rolled_back else self._quarantine(node_id)
            raise PartialWriteError(
                f"Write of node {node_id} failed at the vector index",
                node_id=node_id,
                stage="vectors",
                rolled_back=rolled_back,
                quarantined=quarantined,
            ) from e

        self.scorer.observe(node.access_count, self.graph.weighted_degree(node_id))
        logger.debug(
            "Ingested node %s (version=%d, facets=%s, importance=%.3f)",
            node_id,
            node.version,
            sorted(vectors),
            node.importance,
        )

    def _undo_vectors(self, node: MemoryNode, existing: MemoryNode | None) -> bool:
        """Restore the index to its state before a failed write."""
        try:
            if existing is None:
                self.index.remove(node.id, node.facets, track_usage=False)
            else:
                added = node.facets - existing.facets
                if added:
                    self.index.remove(node.id, added, track_usage=False)
                self.index.index(existing, track_usage=False)
        except TrellisError as e:
            logger.error("Vector rollback failed for node %s: %s", node.id, e)
            return False
        return True

    def _quarantine(self, node_id: str) -> bool:
        """Flag a half-written node so retrieval skips it. Returns True on success."""
        try:
            node = self.graph.find(node_id)
            if node is None:
                return False
            node.quarantined = True
            self.graph.update(node)
        except TrellisError as e:
            logger.error("Could not quarantine node %s: %s", node_id, e)
            return False
        logger.error("Node %s quarantined after failed rollback", node_id)
        return True

    def ingest_text(
        self,
        content: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        facets: Iterable[str] | None = None,
        **kwargs: Any,
    ) -> str:
        """Embed content with the embedding provider and ingest it.

        Facets whose embedding fails are left out of the node.

        Raises:
            ConfigurationError: No embedding provider configured.
            BackendUnavailableError: Every facet failed to embed.
        """
        provider = self._require_provider()
        embedded = embed_facets(provider, content, self._facets(facets))
        return self.ingest(content, embedded.vectors, metadata, **kwargs)

    # =========================================================================
    # Retrieval
    # =========================================================================

    def query(
        self,
        query_vectors: VectorMap,
        k: int = 10,
        depth: int | None = None,
        lambda_: float | None = None,
        *,
        relation_filter: Iterable[str] | None = None,
        timeout: float | None = None,
        reinforce: bool = True,
    ) -> MemoryBundle:
        """Retrieve up to k memories ranked by relevance, importance and diversity.

        Args:
            query_vectors: Query embedding per facet.
            k: Number of hits wanted.
            depth: Traversal depth (default traversal_depth).
            lambda_: MMR trade-off (default mmr_lambda).
            relation_filter: Only follow edges with these relation labels.
            timeout: Query deadline in seconds (default query_timeout).
            reinforce: Record the access on every returned node.
        """
        bundle = self.retriever.retrieve(
            query_vectors,
            k=k,
            depth=depth,
            lambda_=lambda_,
            relation_filter=relation_filter,
            timeout=timeout,
        )
        if reinforce:
            for hit in bundle.hits:
                refreshed = self._reinforce(hit.node.id)
                if refreshed is not None:
                    hit.node = refreshed
        return bundle

    def query_text(
        self,
        text: str,
        k: int = 10,
        depth: int | None = None,
        lambda_: float | None = None,
        *,
        facets: Iterable[str] | None = None,
        **kwargs: Any,
    ) -> MemoryBundle:
        """Embed text per facet and query. Failed facets are reported on the bundle."""
        provider = self._require_provider()
        embedded = embed_facets(provider, text, self._facets(facets))
        bundle = self.query(embedded.vectors, k, depth, lambda_, **kwargs)
        bundle.failed_facets.update(embedded.failed)
        return bundle

    def _reinforce(self, node_id: str) -> MemoryNode | None:
        """Record an access and raise the node's importance."""

        def attempt() -> MemoryNode:
            node = self.graph.get(node_id)
            now = self.now()
            node.access_count += 1
            node.last_accessed = now
            degree = self.graph.weighted_degree(node_id)
            node.importance = self.scorer.reinforce(node, degree, now)
            self.graph.update(node)
            return node

        try:
            return self._conflict.call(attempt)
        except TrellisError as e:
            logger.warning("Could not reinforce node %s: %s", node_id, e)
            return None

    # =========================================================================
    # Pruning
    # =========================================================================

    def prune(self, dry_run: bool = False, *, timeout: float | None = None) -> PruneReport:
        """Run one eviction sweep now."""
        return self.pruner.sweep(dry_run=dry_run, timeout=timeout)

    def start_background_pruning(self) -> None:
        self.pruner.start()

    def stop_background_pruning(self) -> None:
        self.pruner.stop()

    # =========================================================================
    # Graph Housekeeping
    # =========================================================================

    def link(
        self,
        source: str,
        target: str,
        relation: str | Relation = Relation.RELATED_TO,
        weight: float = 1.0,
        directed: bool = True,
    ) -> Edge:
        """Create or replace an edge between two existing nodes."""
        for endpoint in (source, target):
            if not self.graph.exists(endpoint):
                raise NotFoundError(
                    f"Node {endpoint} not found",
                    resource_type="node",
                    resource_id=endpoint,
                )
        edge = Edge(source=source, target=target, relation=relation, weight=weight, directed=directed)
        self.graph.add_edge(edge)
        self.scorer.observe(0, self.graph.weighted_degree(source))
        self.scorer.observe(0, self.graph.weighted_degree(target))
        return edge

    def unlink(self, source: str, target: str, relation: str | Relation = Relation.RELATED_TO) -> bool:
        """Remove an edge. Returns False if it did not exist."""
        return self.graph.remove_edge(source, target, getattr(relation, "value", relation))

    def get(self, node_id: str) -> MemoryNode:
        """Get a node by ID. Raises NotFoundError."""
        return self.graph.get(node_id)

    def forget(self, node_id: str) -> list[Edge]:
        """Remove a node, its edges and its vectors. Returns the removed edges."""
        edges = self.graph.remove(node_id)
        logger.info("Forgot node %s", node_id)
        return edges

    def repair(self, node_id: str) -> MemoryNode:
        """Re-index a quarantined node's vectors and return it to retrieval."""

        def attempt() -> MemoryNode:
            node = self.graph.get(node_id)
            self.registry.validate_all(node.vectors)
            self.index.index(node)
            node.quarantined = False
            self.graph.update(node)
            return node

        node = self._conflict.call(attempt)
        logger.info("Repaired node %s", node_id)
        return node

    def register_facet(self, name: str, dim: int) -> None:
        """Register a facet's dimensionality before any node uses it."""
        self.registry.register(name, dim)

    def stats(self) -> dict[str, Any]:
        max_access, max_degree = self.scorer.maxima
        last = self.pruner.last_report
        return {
            "nodes": self.graph.count(),
            "facets": self.registry.to_dict(),
            "facet_usage": self.index.facet_counts(),
            "graph_backend": self.config.graph_backend,
            "vector_backends": {
                facet: self.config.backend_for_facet(facet) for facet in self.registry.facets()
            },
            "max_access_count": max_access,
            "max_weighted_degree": max_degree,
            "pruner_running": self.pruner.is_running,
            "last_prune": last.to_dict() if last else None,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.pruner.is_running:
            self.pruner.stop()
        self.retriever.close()
        closed: set[int] = set()
        for backend in [*self._adapters.values(), *self._extra_backends]:
            if id(backend) in closed:
                continue
            closed.add(id(backend))
            backend.close()
        logger.info("Memory engine closed")

    def __enter__(self) -> "MemoryEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require_provider(self) -> EmbeddingProvider:
        if self._embedding_provider is None:
            raise ConfigurationError(
                "No embedding provider configured",
                setting="embedding_provider",
                suggestion="Pass embedding_provider= to MemoryEngine",
            )
        return self._embedding_provider

    def _facets(self, facets: Iterable[str] | None) -> list[str]:
        names = self.registry.facets() if facets is None else list(facets)
        if not names:
            raise ValidationError("No facets registered", field="facets", constraint="non-empty")
        return names


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


__all__ = ["MemoryEngine"]
