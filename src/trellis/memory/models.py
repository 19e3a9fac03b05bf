"""Data model for the memory graph.

MemoryNode and Edge are the persisted entities; Candidate and Neighbor are
ephemeral per-query structures and are never stored.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterable

import numpy as np


def utcnow() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO timestamp, assuming UTC when no offset is present."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class NodeState(str, Enum):
    """Lifecycle states of a memory node."""

    INGESTED = "ingested"
    SCORED = "scored"
    INDEXED = "indexed"
    ACTIVE = "active"
    STALE = "stale"
    PRUNED = "pruned"
    QUARANTINED = "quarantined"


class CandidateSource(str, Enum):
    """Where a retrieval candidate came from."""

    SEMANTIC = "semantic"
    GRAPH = "graph"


class Relation(str, Enum):
    """Common relation labels. Any string label is accepted by the graph."""

    RELATED_TO = "related_to"
    REFERENCES = "references"
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    FOLLOWS_FROM = "follows_from"
    PART_OF = "part_of"
    CAUSES = "causes"


def relation_labels(relation_filter: Iterable[str] | None) -> list[str] | None:
    """Normalize a relation filter to plain labels.

    A single string (or Relation) is one label, not a sequence of characters.
    """
    if relation_filter is None:
        return None
    if isinstance(relation_filter, str):
        relation_filter = [relation_filter]
    return sorted({getattr(r, "value", r) for r in relation_filter})


# =============================================================================
# Persisted Entities
# =============================================================================


@dataclass
class MemoryNode:
    """A stored fact with one embedding per named facet."""

    id: str
    content: str
    vectors: dict[str, np.ndarray] = field(default_factory=dict)
    importance: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime | None = None
    access_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0  # 0 = never written
    quarantined: bool = False

    def __post_init__(self) -> None:
        if self.last_accessed is None:
            self.last_accessed = self.created_at

    @property
    def facets(self) -> frozenset[str]:
        return frozenset(self.vectors)

    def idle_seconds(self, now: datetime) -> float:
        """Seconds since the node was last accessed (never negative)."""
        return max(0.0, (now - self.last_accessed).total_seconds())

    def is_stale(self, now: datetime, *, ttl: float, threshold: float) -> bool:
        """Unreached for longer than ttl and scored below threshold."""
        return self.idle_seconds(now) > ttl and self.importance < threshold

    def state(self, now: datetime, *, ttl: float, threshold: float) -> NodeState:
        if self.quarantined:
            return NodeState.QUARANTINED
        if self.version == 0:
            return NodeState.INGESTED
        if self.is_stale(now, ttl=ttl, threshold=threshold):
            return NodeState.STALE
        return NodeState.ACTIVE

    def copy(self) -> "MemoryNode":
        """Deep copy, including vector arrays."""
        clone = copy.copy(self)
        clone.vectors = {name: vec.copy() for name, vec in self.vectors.items()}
        clone.metadata = copy.deepcopy(self.metadata)
        return clone

    def to_dict(self, *, include_vectors: bool = False) -> dict[str, Any]:
        """Convert to dictionary."""
        data: dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "facets": sorted(self.vectors),
            "importance": self.importance,
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "access_count": self.access_count,
            "metadata": dict(self.metadata),
            "version": self.version,
            "quarantined": self.quarantined,
        }
        if include_vectors:
            data["vectors"] = {name: vec.tolist() for name, vec in self.vectors.items()}
        return data


@dataclass(frozen=True)
class Edge:
    """A weighted, labelled relationship between two nodes.

    Identity is (source, target, relation); writing the same triple again
    replaces weight and direction.
    """

    source: str
    target: str
    relation: str = Relation.RELATED_TO.value
    weight: float = 1.0
    directed: bool = True

    def __post_init__(self) -> None:
        # Normalize enum members to their plain string label
        if isinstance(self.relation, Enum):
            object.__setattr__(self, "relation", self.relation.value)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source, self.target, self.relation)

    def touches(self, node_id: str) -> bool:
        return node_id in (self.source, self.target)

    def other(self, node_id: str) -> str:
        """The endpoint opposite to node_id."""
        return self.target if node_id == self.source else self.source

    def traversable_from(self, node_id: str) -> bool:
        """Directed edges are followed source → target only."""
        if node_id == self.source:
            return True
        return not self.directed and node_id == self.target

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "source": self.source,
            "target": self.target,
            "relation": self.relation,
            "weight": self.weight,
            "directed": self.directed,
        }

    @classmethod
    def from_row(cls, row: Any) -> "Edge":
        """Create from database row."""
        return cls(
            source=row["source_id"],
            target=row["target_id"],
            relation=row["relation"],
            weight=row["weight"],
            directed=bool(row["directed"]),
        )


# =============================================================================
# Ephemeral Query Structures
# =============================================================================


@dataclass
class Neighbor:
    """A node reached by graph traversal from a start node."""

    node_id: str
    hop: int
    weight_product: float
    path: list[str] = field(default_factory=list)
    relations: list[str] = field(default_factory=list)


@dataclass
class Candidate:
    """One entry of the per-query candidate set."""

    node_id: str
    relevance: float = 0.0
    source: CandidateSource = CandidateSource.SEMANTIC
    semantic_similarity: float = 0.0
    graph_relevance: float = 0.0
    graph_hop: int = 0
    facet: str | None = None
    seed_id: str | None = None
    path: list[str] = field(default_factory=list)
    relations: list[str] = field(default_factory=list)
    node: MemoryNode | None = None
    score: float = 0.0
    order: int = 0  # insertion order, final tie-breaker

    @property
    def hop(self) -> int:
        """Traversal distance from the nearest seed (0 for semantic hits)."""
        return 0 if self.source == CandidateSource.SEMANTIC else self.graph_hop

    def offer_semantic(self, similarity: float, facet: str) -> None:
        """Keep the best per-facet similarity."""
        if self.facet is None or similarity > self.semantic_similarity:
            self.semantic_similarity = similarity
            self.facet = facet
        self._recompute()

    def offer_graph(self, relevance: float, neighbor: Neighbor, seed_id: str) -> None:
        """Keep the strongest graph-derived relevance and its path."""
        if self.seed_id is None or relevance > self.graph_relevance:
            self.graph_relevance = relevance
            self.graph_hop = neighbor.hop
            self.seed_id = seed_id
            self.path = list(neighbor.path)
            self.relations = list(neighbor.relations)
        self._recompute()

    def _recompute(self) -> None:
        if self.facet is not None and self.semantic_similarity >= self.graph_relevance:
            self.source = CandidateSource.SEMANTIC
            self.relevance = self.semantic_similarity
        else:
            self.source = CandidateSource.GRAPH
            self.relevance = self.graph_relevance


__all__ = [
    "Candidate",
    "CandidateSource",
    "Edge",
    "MemoryNode",
    "Neighbor",
    "NodeState",
    "Relation",
    "parse_timestamp",
    "relation_labels",
    "utcnow",
]
