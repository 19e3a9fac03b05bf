"""Hybrid vector-graph memory.

- Multi-facet embeddings per node, each facet with its own dimensionality
- Weighted, labelled edges between nodes (graph store)
- Two-phase retrieval (semantic search → graph expansion → MMR re-ranking)
- Importance scoring with recency decay, usage and centrality
- Background pruning of stale, low-value memories
"""

from __future__ import annotations

from .backends import BackendAdapter, InMemoryBackend, SQLiteBackend, create_backend
from .embeddings import EmbeddingProvider, FacetEmbeddings, embed_facets
from .engine import MemoryEngine
from .graph_store import MemoryGraphStore, StagedWrite, TraversalResult
from .mmr import MMRSelector
from .models import (
    Candidate,
    CandidateSource,
    Edge,
    MemoryNode,
    Neighbor,
    NodeState,
    Relation,
)
from .pruner import PruneReport, Pruner
from .registry import VectorSpaceRegistry
from .retriever import MemoryBundle, MemoryHit, Provenance, RetrievalOrchestrator
from .scoring import ImportanceScorer
from .vector_index import VectorIndex

__all__ = [
    # Engine
    "MemoryEngine",
    # Data model
    "MemoryNode",
    "Edge",
    "Relation",
    "NodeState",
    "Candidate",
    "CandidateSource",
    "Neighbor",
    # Backends
    "BackendAdapter",
    "InMemoryBackend",
    "SQLiteBackend",
    "create_backend",
    # Stores
    "MemoryGraphStore",
    "StagedWrite",
    "TraversalResult",
    "VectorIndex",
    "VectorSpaceRegistry",
    # Scoring and retrieval
    "ImportanceScorer",
    "MMRSelector",
    "RetrievalOrchestrator",
    "MemoryBundle",
    "MemoryHit",
    "Provenance",
    # Pruning
    "Pruner",
    "PruneReport",
    # Embeddings
    "EmbeddingProvider",
    "FacetEmbeddings",
    "embed_facets",
]
