"""Vector helpers for facet embeddings.

Embedding Format:
- In memory: 1-D numpy float32 arrays
- Storage: float32 bytes (4 bytes per dimension)
- Similarity: cosine, clipped to [0, 1] at the interface (opposed and
  orthogonal vectors both score 0)
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

import numpy as np

from ..errors import ValidationError

logger = logging.getLogger(__name__)


def as_vector(values: Sequence[float] | np.ndarray, *, facet: str | None = None) -> np.ndarray:
    """Coerce values to a 1-D float32 array.

    Raises:
        ValidationError: If the input is not a flat, finite, non-empty vector.
    """
    try:
        vec = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Vector for facet '{facet}' is not numeric",
            field="facet",
            value=facet,
            constraint="numeric",
        ) from e

    if vec.ndim != 1 or vec.size == 0:
        raise ValidationError(
            f"Vector for facet '{facet}' must be a non-empty 1-D sequence",
            field="facet",
            value=facet,
            constraint="shape",
        )
    if not np.all(np.isfinite(vec)):
        raise ValidationError(
            f"Vector for facet '{facet}' contains NaN or infinite values",
            field="facet",
            value=facet,
            constraint="finite",
        )
    return vec


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Compute cosine similarity between two vectors.

    Returns:
        Cosine similarity (-1 to 1), 0 if either vector is zero or lengths differ.
    """
    if a.shape != b.shape:
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity normalized to [0, 1]."""
    return min(1.0, max(0.0, cosine_similarity(a, b)))


def facet_similarity(
    left: dict[str, np.ndarray],
    right: dict[str, np.ndarray],
) -> float:
    """Mean normalized similarity over the facets two nodes share.

    Returns 0 when the nodes share no facet.
    """
    shared = left.keys() & right.keys()
    if not shared:
        return 0.0
    return sum(similarity(left[f], right[f]) for f in shared) / len(shared)


def top_k_similar(
    query: np.ndarray,
    candidates: Iterable[tuple[str, np.ndarray]],
    k: int,
) -> list[tuple[str, float]]:
    """Rank candidates by normalized cosine similarity.

    Args:
        query: Query vector.
        candidates: (id, vector) pairs; vectors must match the query length.
        k: Maximum number of results.

    Returns:
        Up to k (id, similarity) tuples, sorted by similarity descending.
        Ties keep candidate order.
    """
    if k <= 0:
        return []

    ids: list[str] = []
    rows: list[np.ndarray] = []
    for node_id, vec in candidates:
        if vec.shape != query.shape:
            logger.warning(
                "Skipping vector with wrong shape for %s (expected %s, got %s)",
                node_id,
                query.shape,
                vec.shape,
            )
            continue
        ids.append(node_id)
        rows.append(vec)

    if not ids:
        return []

    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return [(node_id, 0.0) for node_id in ids[:k]]

    matrix = np.vstack(rows).astype(np.float32, copy=False)
    norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / (norms * query_norm), 0.0)
    sims = np.clip(sims, 0.0, 1.0)

    # Stable sort keeps insertion order among equal scores
    order = np.argsort(-sims, kind="stable")[:k]
    return [(ids[i], float(sims[i])) for i in order]


def vector_to_bytes(vec: np.ndarray) -> bytes:
    """Convert a vector to float32 bytes."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def bytes_to_vector(data: bytes) -> np.ndarray:
    """Convert float32 bytes to a vector (writable copy)."""
    return np.frombuffer(data, dtype=np.float32).copy()


__all__ = [
    "as_vector",
    "bytes_to_vector",
    "cosine_similarity",
    "facet_similarity",
    "similarity",
    "top_k_similar",
    "vector_to_bytes",
]
