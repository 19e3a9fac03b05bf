"""Tests for memory/retriever.py - two-phase retrieval and degradation.

- Semantic phase: per-facet merge, threshold, hydration
- Graph phase: relevance = seed similarity × weight product × gamma ** hop
- Importance weighting of the final score
- Partial failure: dropped facets, failed expansions, deadlines
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable
from unittest.mock import patch

import pytest

from conftest import vec
from trellis.errors import BackendUnavailableError, DimensionMismatchError, ValidationError
from trellis.memory.engine import MemoryEngine
from trellis.memory.models import CandidateSource, Edge, Relation
from trellis.memory.retriever import MemoryBundle

TOPIC_A = vec(1, 0, 0, 0)
TOPIC_B = vec(0, 1, 0, 0)
TOPIC_C = vec(0, 0, 1, 0)
TOPIC_D = vec(0, 0, 0, 1)


def retrieve(engine: MemoryEngine, query: dict, **kwargs) -> MemoryBundle:
    kwargs.setdefault("k", 10)
    return engine.retriever.retrieve(query, **kwargs)


def hits_by_id(bundle: MemoryBundle) -> dict:
    return {hit.node_id: hit for hit in bundle}


def failing_search(engine: MemoryEngine, failing: set[str], error: Exception | None = None) -> Callable:
    """Wrap VectorIndex.search so the given facets raise."""
    real = engine.index.search

    def search(facet, query, k):
        if facet in failing:
            raise error or BackendUnavailableError(f"{facet} index down", backend="test", operation="vector_search")
        return real(facet, query, k)

    return search


# =============================================================================
# Semantic Phase
# =============================================================================


class TestSemanticPhase:
    """Test the semantic phase."""

    def test_best_facet_similarity_wins(self, engine: MemoryEngine) -> None:
        """A node scores its best per-facet similarity."""
        engine.ingest("n", {"topic": TOPIC_A, "style": vec(0, 1, 0)}, node_id="n", importance=1.0)

        bundle = retrieve(engine, {"topic": vec(1, 1, 0, 0), "style": vec(0, 1, 0)})

        hit = bundle.hits[0]
        assert hit.relevance == pytest.approx(1.0)
        assert hit.provenance.facet == "style"
        assert hit.provenance.source == CandidateSource.SEMANTIC
        assert bundle.total_semantic_matches == 1

    def test_score_is_relevance_times_importance(self, engine: MemoryEngine) -> None:
        """Final score is relevance times importance."""
        engine.ingest("low", {"topic": TOPIC_A}, node_id="low", importance=0.2)
        engine.ingest("high", {"topic": vec(1, 0.2, 0, 0)}, node_id="high", importance=0.9)

        bundle = retrieve(engine, {"topic": TOPIC_A}, lambda_=1.0)

        assert bundle.node_ids == ["high", "low"]
        low = hits_by_id(bundle)["low"]
        assert low.score == pytest.approx(low.relevance * 0.2)

    def test_zero_similarity_is_not_a_match(self, engine: MemoryEngine) -> None:
        """Orthogonal and opposed nodes are not semantic matches."""
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a")
        engine.ingest("b", {"topic": TOPIC_B}, node_id="b")
        engine.ingest("c", {"topic": vec(-1, 0, 0, 0)}, node_id="c")

        bundle = retrieve(engine, {"topic": TOPIC_A})

        assert bundle.node_ids == ["a"]
        assert bundle.total_semantic_matches == 1

    def test_semantic_threshold_filters(self, make_engine) -> None:
        """Matches under the semantic threshold are dropped."""
        engine = make_engine(semantic_threshold=0.5)
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a")
        engine.ingest("b", {"topic": TOPIC_B}, node_id="b")

        assert retrieve(engine, {"topic": TOPIC_A}).node_ids == ["a"]

    def test_orphan_index_entries_dropped(self, engine: MemoryEngine) -> None:
        """Index entries without a stored node are dropped."""
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a")
        engine.index.backend_for("topic").upsert_vectors("ghost", {"topic": TOPIC_A})

        assert retrieve(engine, {"topic": TOPIC_A}).node_ids == ["a"]

    def test_quarantined_nodes_excluded(self, engine: MemoryEngine) -> None:
        """Quarantined nodes never reach the bundle."""
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a")
        engine.ingest("b", {"topic": TOPIC_A}, node_id="b")
        node = engine.graph.get("b")
        node.quarantined = True
        engine.graph.update(node)

        assert retrieve(engine, {"topic": TOPIC_A}).node_ids == ["a"]

    def test_returns_at_most_k(self, engine: MemoryEngine) -> None:
        """The bundle holds at most k hits."""
        for i in range(6):
            engine.ingest(f"n{i}", {"topic": vec(1, i * 0.1, 0, 0)}, node_id=f"n{i}")

        assert len(retrieve(engine, {"topic": TOPIC_A}, k=4)) == 4

    def test_empty_store(self, engine: MemoryEngine) -> None:
        """An empty store yields an empty bundle."""
        bundle = retrieve(engine, {"topic": TOPIC_A})
        assert bundle.hits == []
        assert not bundle.degraded


# =============================================================================
# Graph Phase
# =============================================================================


class TestGraphPhase:
    """Test graph expansion from semantic seeds."""

    @pytest.fixture
    def chain(self, make_engine) -> MemoryEngine:
        """a -0.8-> b -0.5-> c -1.0-> d, only a matches the query."""
        engine = make_engine(semantic_threshold=0.1)
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a", importance=1.0)
        engine.ingest("b", {"topic": TOPIC_B}, node_id="b", importance=0.5, edges=[Edge("a", "b", "supports", 0.8)])
        engine.ingest("c", {"topic": TOPIC_C}, node_id="c", importance=1.0, edges=[Edge("b", "c", "references", 0.5)])
        engine.ingest("d", {"topic": TOPIC_D}, node_id="d", importance=1.0, edges=[Edge("c", "d", weight=1.0)])
        return engine

    def test_graph_relevance_formula(self, chain: MemoryEngine) -> None:
        """Graph relevance is seed similarity times weights times gamma per hop."""
        bundle = retrieve(chain, {"topic": TOPIC_A}, depth=2)
        hits = hits_by_id(bundle)

        # gamma defaults to 0.5
        assert hits["b"].relevance == pytest.approx(1.0 * 0.8 * 0.5)
        assert hits["b"].score == pytest.approx(0.4 * 0.5)
        assert hits["c"].relevance == pytest.approx(1.0 * 0.4 * 0.25)

        provenance = hits["c"].provenance
        assert provenance.source == CandidateSource.GRAPH
        assert provenance.hop == 2
        assert provenance.seed_id == "a"
        assert provenance.path == ["a", "b", "c"]
        assert provenance.relations == ["supports", "references"]
        assert bundle.total_graph_expansions == 2

    def test_depth_bounds_expansion(self, chain: MemoryEngine) -> None:
        """Expansion stops at the requested depth."""
        assert set(retrieve(chain, {"topic": TOPIC_A}, depth=2).node_ids) == {"a", "b", "c"}
        assert set(retrieve(chain, {"topic": TOPIC_A}, depth=3).node_ids) == {"a", "b", "c", "d"}

    def test_depth_zero_is_semantic_only(self, chain: MemoryEngine) -> None:
        """Depth zero skips the graph phase."""
        bundle = retrieve(chain, {"topic": TOPIC_A}, depth=0)
        assert bundle.node_ids == ["a"]
        assert bundle.total_graph_expansions == 0

    def test_default_depth_from_config(self, chain: MemoryEngine) -> None:
        """Depth defaults to the configured expansion depth."""
        assert set(retrieve(chain, {"topic": TOPIC_A}).node_ids) == {"a", "b"}

    @pytest.mark.parametrize("relations", [["supports"], ("supports",), "supports", Relation.SUPPORTS])
    def test_relation_filter(self, chain: MemoryEngine, relations) -> None:
        """Only edges with an allowed relation are followed."""
        bundle = retrieve(chain, {"topic": TOPIC_A}, depth=3, relation_filter=relations)

        hits = hits_by_id(bundle)
        assert set(hits) == {"a", "b"}
        assert hits["b"].provenance.source == CandidateSource.GRAPH
        assert hits["b"].relevance == pytest.approx(0.4)

    def test_semantic_and_graph_merge_keeps_max(self, make_engine) -> None:
        """A node found both ways keeps its higher relevance."""
        engine = make_engine()
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a", importance=1.0)
        # b matches weakly on its own but strongly through a
        engine.ingest("b", {"topic": vec(0.1, 1, 0, 0)}, node_id="b", importance=1.0, edges=[Edge("a", "b", weight=1.0)])

        hit = hits_by_id(retrieve(engine, {"topic": TOPIC_A}, depth=1))["b"]

        assert hit.relevance == pytest.approx(0.5)
        assert hit.provenance.source == CandidateSource.GRAPH
        assert 0.0 < hit.provenance.semantic_similarity < 0.5

    def test_failed_expansion_degrades(self, chain: MemoryEngine) -> None:
        """A failed expansion leaves the semantic hits."""
        error = BackendUnavailableError("graph down", backend="test", operation="neighbors")
        with patch.object(chain.graph, "neighbors", side_effect=error):
            bundle = retrieve(chain, {"topic": TOPIC_A}, depth=2)

        assert bundle.node_ids == ["a"]
        assert "a" in bundle.failed_expansions
        assert bundle.degraded


# =============================================================================
# Degradation and Validation
# =============================================================================


class TestDegradation:
    """Test partial failure of the vector layer."""

    @pytest.fixture
    def two_facets(self, engine: MemoryEngine) -> MemoryEngine:
        engine.ingest("t", {"topic": TOPIC_A}, node_id="t")
        engine.ingest("s", {"style": vec(1, 0, 0)}, node_id="s")
        return engine

    def test_failed_facet_is_dropped(self, two_facets: MemoryEngine) -> None:
        """A facet whose search fails is dropped and reported."""
        with patch.object(two_facets.index, "search", side_effect=failing_search(two_facets, {"style"})):
            bundle = retrieve(two_facets, {"topic": TOPIC_A, "style": vec(1, 0, 0)})

        assert bundle.node_ids == ["t"]
        assert "style" in bundle.failed_facets
        assert bundle.degraded
        assert bundle.timed_out is False

    def test_unexpected_facet_error_is_dropped(self, two_facets: MemoryEngine) -> None:
        """An unexpected error in one facet is dropped like a backend error."""
        error = sqlite3.DatabaseError("database disk image is malformed")
        search = failing_search(two_facets, {"style"}, error)
        with patch.object(two_facets.index, "search", side_effect=search):
            bundle = retrieve(two_facets, {"topic": TOPIC_A, "style": vec(1, 0, 0)})

        assert bundle.node_ids == ["t"]
        assert bundle.failed_facets == {"style": "database disk image is malformed"}

    def test_all_facets_failing_raises(self, two_facets: MemoryEngine) -> None:
        """The query fails when every facet fails."""
        search = failing_search(two_facets, {"topic", "style"})
        with patch.object(two_facets.index, "search", side_effect=search):
            with pytest.raises(BackendUnavailableError):
                retrieve(two_facets, {"topic": TOPIC_A, "style": vec(1, 0, 0)})

    def test_slow_facet_misses_deadline(self, two_facets: MemoryEngine) -> None:
        """A facet slower than the deadline is dropped."""
        real = two_facets.index.search
        release = threading.Event()

        def search(facet, query, k):
            if facet == "style":
                release.wait(2.0)
            return real(facet, query, k)

        try:
            with patch.object(two_facets.index, "search", side_effect=search):
                bundle = retrieve(two_facets, {"topic": TOPIC_A, "style": vec(1, 0, 0)}, timeout=0.2)
        finally:
            release.set()

        assert bundle.timed_out is True
        assert bundle.failed_facets == {"style": "timed out"}
        assert bundle.node_ids == ["t"]


class TestValidation:
    """Test query validation."""

    def test_empty_query(self, engine: MemoryEngine) -> None:
        """A query with no facets is rejected."""
        with pytest.raises(ValidationError):
            retrieve(engine, {})

    def test_unknown_facet(self, engine: MemoryEngine) -> None:
        """An unregistered facet is rejected."""
        with pytest.raises(ValidationError):
            retrieve(engine, {"mood": [1.0]})

    def test_dimension_mismatch_before_search(self, engine: MemoryEngine) -> None:
        """A wrong dimension is rejected before any search."""
        with patch.object(engine.index, "search") as search:
            with pytest.raises(DimensionMismatchError):
                retrieve(engine, {"topic": TOPIC_A, "style": [1.0, 0.0]})
        search.assert_not_called()

    @pytest.mark.parametrize("kwargs", [{"k": 0}, {"depth": -1}, {"lambda_": 2.0}])
    def test_bad_arguments(self, engine: MemoryEngine, kwargs: dict) -> None:
        """Out of range k, depth and lambda are rejected."""
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a")
        with pytest.raises(ValidationError):
            retrieve(engine, {"topic": TOPIC_A}, **kwargs)


class TestWorkerPools:
    """Test the shared retrieval worker pools."""

    def test_pools_reused_across_queries(self, engine: MemoryEngine) -> None:
        """Queries reuse one pool per phase."""
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a")
        engine.ingest("b", {"topic": TOPIC_B}, node_id="b", edges=[Edge("a", "b")])

        for _ in range(20):
            assert retrieve(engine, {"topic": TOPIC_A}, depth=1).node_ids == ["a", "b"]

        # one executor per phase, sized by registered facets and fan-out
        assert set(engine.retriever._pools) == {("search", 2), ("expand", 4)}

    def test_closed_orchestrator_rejects_queries(self, engine: MemoryEngine) -> None:
        """A closed orchestrator drops its pools and rejects queries."""
        engine.ingest("a", {"topic": TOPIC_A}, node_id="a")
        retrieve(engine, {"topic": TOPIC_A})

        engine.retriever.close()

        assert engine.retriever._pools == {}
        with pytest.raises(BackendUnavailableError):
            retrieve(engine, {"topic": TOPIC_A})


# =============================================================================
# Bundle Formatting
# =============================================================================


class TestMemoryBundle:
    """Test MemoryBundle formatting."""

    def test_to_dict(self, make_engine) -> None:
        """MemoryBundle.to_dict serializes correctly."""
        engine = make_engine(semantic_threshold=0.1)
        engine.ingest("Paris is in France", {"topic": TOPIC_A}, node_id="a", importance=1.0)
        engine.ingest("France is in Europe", {"topic": TOPIC_B}, node_id="b", edges=[Edge("a", "b", "part_of")])

        data = retrieve(engine, {"topic": TOPIC_A}, depth=1).to_dict()

        assert [h["node"]["id"] for h in data["hits"]] == ["a", "b"]
        assert data["hits"][1]["provenance"]["source"] == "graph"
        assert data["degraded"] is False
        assert data["total_semantic_matches"] == 1
        assert data["total_graph_expansions"] == 1

    def test_to_markdown(self, make_engine) -> None:
        """MemoryBundle.to_markdown lists each hit."""
        engine = make_engine(semantic_threshold=0.1)
        engine.ingest("Paris is in France", {"topic": TOPIC_A}, node_id="a", importance=1.0)
        engine.ingest("France is in Europe", {"topic": TOPIC_B}, node_id="b", edges=[Edge("a", "b", "part_of")])

        text = retrieve(engine, {"topic": TOPIC_A}, depth=1).to_markdown()

        assert text.startswith("## Relevant Memory")
        assert "Paris is in France" in text
        assert "Connected via: part_of (from a)" in text

    def test_empty_markdown(self) -> None:
        """An empty bundle renders as an empty string."""
        assert MemoryBundle().to_markdown() == ""
