"""Two-phase memory retrieval.

1. Semantic phase: per-facet vector search, issued concurrently and awaited
   jointly against the query deadline. A facet whose search fails or times
   out is dropped from the result.
2. Graph phase: breadth-first expansion from each semantic seed, bounded by
   a fan-out limit. A neighbor's relevance is
   seed similarity × edge-weight product × gamma ** hop.

Candidates are merged (best score per node), weighted by stored importance
and re-ranked by the MMR selector into a MemoryBundle.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

import numpy as np

from ..config import MemoryConfig
from ..errors import BackendUnavailableError, TrellisError, ValidationError
from .graph_store import MemoryGraphStore
from .mmr import MMRSelector
from .models import Candidate, CandidateSource, MemoryNode, Neighbor, relation_labels
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class Provenance:
    """How a hit was reached."""

    source: CandidateSource
    facet: str | None = None
    semantic_similarity: float = 0.0
    graph_relevance: float = 0.0
    hop: int = 0
    seed_id: str | None = None
    path: list[str] = field(default_factory=list)
    relations: list[str] = field(default_factory=list)

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "Provenance":
        return cls(
            source=candidate.source,
            facet=candidate.facet,
            semantic_similarity=candidate.semantic_similarity,
            graph_relevance=candidate.graph_relevance,
            hop=candidate.hop,
            seed_id=candidate.seed_id,
            path=list(candidate.path),
            relations=list(candidate.relations),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "source": self.source.value,
            "facet": self.facet,
            "semantic_similarity": self.semantic_similarity,
            "graph_relevance": self.graph_relevance,
            "hop": self.hop,
            "seed_id": self.seed_id,
            "path": list(self.path),
            "relations": list(self.relations),
        }


@dataclass
class MemoryHit:
    """A retrieved node with its scores.

    relevance is max(semantic similarity, graph relevance); score is
    relevance weighted by the node's importance and drives ranking.
    """

    node: MemoryNode
    relevance: float
    score: float
    provenance: Provenance

    @property
    def node_id(self) -> str:
        return self.node.id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "node": self.node.to_dict(),
            "relevance": self.relevance,
            "score": self.score,
            "provenance": self.provenance.to_dict(),
        }


@dataclass
class MemoryBundle:
    """Ranked result of one query, with degradation details."""

    hits: list[MemoryHit] = field(default_factory=list)
    failed_facets: dict[str, str] = field(default_factory=dict)
    failed_expansions: dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    total_semantic_matches: int = 0
    total_graph_expansions: int = 0

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[MemoryHit]:
        return iter(self.hits)

    @property
    def node_ids(self) -> list[str]:
        return [hit.node.id for hit in self.hits]

    @property
    def degraded(self) -> bool:
        """True if any facet or expansion was dropped or the deadline hit."""
        return bool(self.failed_facets or self.failed_expansions or self.timed_out)

    def to_markdown(self) -> str:
        """Format the bundle as markdown for a generation prompt."""
        if not self.hits:
            return ""

        lines = ["## Relevant Memory\n"]
        lines.append(
            f"*Retrieved {len(self.hits)} memories "
            f"({self.total_semantic_matches} semantic, "
            f"{self.total_graph_expansions} via relationships)*\n"
        )

        for i, hit in enumerate(self.hits, 1):
            score_bar = "█" * int(hit.score * 5)
            source = hit.provenance.source.value
            lines.append(f"### Memory #{i} [{score_bar}] ({source})")
            lines.append(f"*Relevance: {hit.relevance:.2f} | Score: {hit.score:.2f}*\n")
            lines.append(hit.node.content)
            if hit.provenance.relations:
                chain = " → ".join(hit.provenance.relations)
                lines.append(f"\n*Connected via: {chain} (from {hit.provenance.seed_id})*")
            lines.append("")

        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": [hit.to_dict() for hit in self.hits],
            "failed_facets": dict(self.failed_facets),
            "failed_expansions": dict(self.failed_expansions),
            "timed_out": self.timed_out,
            "degraded": self.degraded,
            "total_semantic_matches": self.total_semantic_matches,
            "total_graph_expansions": self.total_graph_expansions,
        }


# =============================================================================
# Orchestrator
# =============================================================================


class RetrievalOrchestrator:
    """Runs semantic search, graph expansion and MMR selection for a query."""

    def __init__(
        self,
        graph: MemoryGraphStore,
        index: VectorIndex,
        selector: MMRSelector,
        config: MemoryConfig,
    ) -> None:
        self._graph = graph
        self._index = index
        self._selector = selector
        self._config = config
        self._pools: dict[tuple[str, int], ThreadPoolExecutor] = {}
        self._pools_lock = threading.Lock()
        self._closed = False

    def retrieve(
        self,
        query_vectors: Mapping[str, Sequence[float] | np.ndarray],
        *,
        k: int,
        depth: int | None = None,
        lambda_: float | None = None,
        relation_filter: Iterable[str] | None = None,
        timeout: float | None = None,
    ) -> MemoryBundle:
        """Retrieve up to k diversified memories.

        Args:
            query_vectors: Query embedding per facet.
            k: Number of hits wanted.
            depth: Traversal depth (default from config; 0 = semantic only).
            lambda_: MMR trade-off (default from config).
            relation_filter: Only follow edges with these relation labels.
            timeout: Seconds until the query deadline (default from config).

        Raises:
            ValidationError: Empty query, unknown facet, bad k/depth.
            DimensionMismatchError: A query vector has the wrong length.
            BackendUnavailableError: Every facet search failed.
        """
        if not query_vectors:
            raise ValidationError("Query needs at least one facet vector", field="query_vectors")
        if k < 1:
            raise ValidationError("k must be >= 1", field="k", value=k)
        depth = self._config.traversal_depth if depth is None else depth
        if depth < 0:
            raise ValidationError("depth must be >= 0", field="depth", value=depth)

        # Fail fast on bad facets before any backend call
        queries = {
            facet: self._index.registry.validate(facet, vec) for facet, vec in query_vectors.items()
        }
        relations = relation_labels(relation_filter)
        timeout = self._config.query_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        k1 = max(self._config.top_k_per_facet, k)

        bundle = MemoryBundle()
        candidates: dict[str, Candidate] = {}

        # Stage 1: semantic search
        self._semantic_phase(queries, k1, deadline, candidates, bundle)
        seeds = self._hydrate(candidates, bundle)
        bundle.total_semantic_matches = len(seeds)

        # Stage 2: graph expansion
        if depth > 0 and seeds and not bundle.timed_out:
            before = set(candidates)
            self._graph_phase(seeds, depth, relations, deadline, candidates, bundle)
            self._hydrate(candidates, bundle)
            bundle.total_graph_expansions = len(
                [c for c in candidates.values() if c.node_id not in before and c.node is not None]
            )

        # Stage 3: weight by importance and diversify
        hydrated = [c for c in candidates.values() if c.node is not None]
        for candidate in hydrated:
            candidate.score = candidate.relevance * candidate.node.importance
        # Zero-score candidates carry no relevance and would only win on diversity
        pool = [c for c in hydrated if c.score > 0.0]
        selected = self._selector.select(pool, k, lambda_=lambda_)

        bundle.hits = [
            MemoryHit(
                node=c.node,
                relevance=c.relevance,
                score=c.score,
                provenance=Provenance.from_candidate(c),
            )
            for c in selected
        ]
        logger.debug(
            "Retrieved %d hits from %d candidates (semantic=%d, graph=%d, degraded=%s)",
            len(bundle.hits),
            len(pool),
            bundle.total_semantic_matches,
            bundle.total_graph_expansions,
            bundle.degraded,
        )
        return bundle

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _semantic_phase(
        self,
        queries: dict[str, np.ndarray],
        k1: int,
        deadline: float,
        candidates: dict[str, Candidate],
        bundle: MemoryBundle,
    ) -> None:
        calls = {
            facet: (lambda f=facet, v=vec: self._index.search(f, v, k1))
            for facet, vec in queries.items()
        }
        results, errors, pending = self._run_parallel(
            calls, len(self._index.registry.facets()), deadline, "search"
        )

        for facet, error in errors.items():
            logger.warning("Dropping facet %s from query: %s", facet, error)
            bundle.failed_facets[facet] = str(error)
        for facet in pending:
            logger.warning("Facet %s search missed the query deadline", facet)
            bundle.failed_facets[facet] = "timed out"
            bundle.timed_out = True

        if errors and len(errors) == len(queries):
            raise BackendUnavailableError(
                "Every facet search failed",
                backend="vector_index",
                operation="search",
                context={"failed_facets": dict(bundle.failed_facets)},
            )

        # Deterministic merge order regardless of completion order
        for facet in queries:
            for node_id, sim in results.get(facet, []):
                candidate = candidates.get(node_id)
                if candidate is None:
                    candidate = Candidate(node_id=node_id, order=len(candidates))
                    candidates[node_id] = candidate
                candidate.offer_semantic(sim, facet)

    def _graph_phase(
        self,
        seeds: list[Candidate],
        depth: int,
        relations: list[str] | None,
        deadline: float,
        candidates: dict[str, Candidate],
        bundle: MemoryBundle,
    ) -> None:
        gamma = self._config.distance_decay
        calls = {
            seed.node_id: (
                lambda s=seed.node_id: self._graph.neighbors(s, depth, relation_filter=relations)
            )
            for seed in seeds
        }
        results, errors, pending = self._run_parallel(
            calls, self._config.expansion_fanout, deadline, "expand"
        )

        for seed_id, error in errors.items():
            logger.warning("Graph expansion from %s failed: %s", seed_id, error)
            bundle.failed_expansions[seed_id] = str(error)
        for seed_id in pending:
            bundle.failed_expansions[seed_id] = "timed out"
            bundle.timed_out = True

        for seed in seeds:
            neighbors: list[Neighbor] = results.get(seed.node_id, [])
            for neighbor in neighbors:
                relevance = seed.semantic_similarity * neighbor.weight_product * gamma**neighbor.hop
                candidate = candidates.get(neighbor.node_id)
                if candidate is None:
                    candidate = Candidate(node_id=neighbor.node_id, order=len(candidates))
                    candidates[neighbor.node_id] = candidate
                candidate.offer_graph(relevance, neighbor, seed.node_id)

    def _hydrate(self, candidates: dict[str, Candidate], bundle: MemoryBundle) -> list[Candidate]:
        """Load nodes for candidates that lack one; drop missing or quarantined nodes."""
        for node_id in list(candidates):
            candidate = candidates[node_id]
            if candidate.node is not None:
                continue
            try:
                node = self._graph.find(node_id)
            except BackendUnavailableError as e:
                logger.warning("Could not load candidate %s: %s", node_id, e)
                bundle.failed_expansions.setdefault(node_id, str(e))
                node = None
            if node is None or node.quarantined:
                if node is None:
                    logger.debug("Index entry %s has no node; skipping", node_id)
                del candidates[node_id]
                continue
            candidate.node = node
        return list(candidates.values())

    # -------------------------------------------------------------------------
    # Worker pools
    # -------------------------------------------------------------------------

    def _pool(self, name: str, max_workers: int) -> ThreadPoolExecutor:
        """Executor shared across queries for one pool name and size.

        Worker threads, and the per-thread backend connections they open, are
        reused rather than created per query.
        """
        key = (name, max(1, max_workers))
        with self._pools_lock:
            if self._closed:
                raise BackendUnavailableError(
                    "Retrieval orchestrator is closed",
                    backend="retriever",
                    operation=name,
                )
            executor = self._pools.get(key)
            if executor is None:
                executor = ThreadPoolExecutor(max_workers=key[1], thread_name_prefix=f"trellis-{name}")
                self._pools[key] = executor
            return executor

    def _run_parallel(
        self,
        calls: Mapping[str, Callable[[], Any]],
        max_workers: int,
        deadline: float,
        name: str,
    ) -> tuple[dict[str, Any], dict[str, Exception], list[str]]:
        """Run keyed calls concurrently until the deadline.

        Returns:
            (results, errors, pending) keyed by call name. Calls still running
            at the deadline are abandoned and reported as pending.
        """
        if not calls:
            return {}, {}, []

        executor = self._pool(name, max_workers)
        futures: dict[Future, str] = {executor.submit(fn): key for key, fn in calls.items()}
        done, not_done = wait(futures, timeout=max(0.0, deadline - time.monotonic()))
        for future in not_done:
            future.cancel()

        results: dict[str, Any] = {}
        errors: dict[str, Exception] = {}
        for future in done:
            key = futures[future]
            try:
                results[key] = future.result()
            except TrellisError as e:
                errors[key] = e
            except Exception as e:
                logger.error("Unexpected %s failure for %s: %s", name, key, e, exc_info=True)
                errors[key] = e
        pending = [futures[f] for f in not_done]
        return results, errors, pending

    def close(self) -> None:
        """Shut down worker pools. Abandoned calls are cancelled."""
        with self._pools_lock:
            self._closed = True
            pools, self._pools = list(self._pools.values()), {}
        for executor in pools:
            executor.shutdown(wait=False, cancel_futures=True)


__all__ = ["MemoryBundle", "MemoryHit", "Provenance", "RetrievalOrchestrator"]
