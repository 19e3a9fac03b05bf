"""Maximal marginal relevance selection.

Picks k candidates one at a time, each maximizing

    lambda * relevance(c) - (1 - lambda) * max_{s in selected} sim(c, s)

where sim is the mean normalized cosine similarity over the facets two
nodes share (0 if they share none). The first pick is always the most
relevant candidate. Ties go to higher importance, then more recent access,
then earlier insertion.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Sequence

from ..errors import ValidationError
from .models import Candidate, MemoryNode
from .vectors import facet_similarity

logger = logging.getLogger(__name__)

Similarity = Callable[[MemoryNode, MemoryNode], float]


def node_similarity(left: MemoryNode, right: MemoryNode) -> float:
    """Similarity of two nodes over their shared facets."""
    return facet_similarity(left.vectors, right.vectors)


def _tie_key(candidate: Candidate) -> tuple[float, datetime | None, int]:
    node = candidate.node
    importance = node.importance if node is not None else 0.0
    accessed = node.last_accessed if node is not None else None
    return (importance, accessed, -candidate.order)


def _better(value: float, candidate: Candidate, best_value: float, best: Candidate) -> bool:
    if value != best_value:
        return value > best_value
    mine, theirs = _tie_key(candidate), _tie_key(best)
    if mine[0] != theirs[0]:
        return mine[0] > theirs[0]
    if mine[1] != theirs[1] and mine[1] is not None and theirs[1] is not None:
        return mine[1] > theirs[1]
    return mine[2] > theirs[2]


class MMRSelector:
    """Diversified top-k re-ranking over a hydrated candidate pool.

    Candidates must carry their node (for vectors and tie-breaks). The
    value being traded off against redundancy is Candidate.score.
    """

    def __init__(self, lambda_: float = 0.7, *, similarity: Similarity = node_similarity) -> None:
        self.lambda_ = _check_lambda(lambda_)
        self._similarity = similarity

    def select(
        self,
        candidates: Sequence[Candidate],
        k: int,
        *,
        lambda_: float | None = None,
    ) -> list[Candidate]:
        """Select up to k candidates.

        Args:
            candidates: Pool to choose from (not modified).
            k: Target size.
            lambda_: Relevance/diversity trade-off override for this call.

        Returns:
            Selected candidates in pick order.
        """
        lam = self.lambda_ if lambda_ is None else _check_lambda(lambda_)
        if k < 1:
            raise ValidationError("k must be >= 1", field="k", value=k)

        pool = [c for c in candidates if c.node is not None]
        if not pool:
            return []

        # Max similarity of each remaining candidate to anything selected so far
        max_sim = [0.0] * len(pool)
        remaining = list(range(len(pool)))
        selected: list[Candidate] = []

        while remaining and len(selected) < k:
            best_idx = remaining[0]
            best_value = self._value(pool[best_idx], max_sim[best_idx], lam, first=not selected)
            for idx in remaining[1:]:
                value = self._value(pool[idx], max_sim[idx], lam, first=not selected)
                if _better(value, pool[idx], best_value, pool[best_idx]):
                    best_idx, best_value = idx, value

            picked = pool[best_idx]
            selected.append(picked)
            remaining.remove(best_idx)

            if lam < 1.0:
                for idx in remaining:
                    sim = self._similarity(pool[idx].node, picked.node)
                    if sim > max_sim[idx]:
                        max_sim[idx] = sim

        logger.debug("MMR selected %d of %d candidates (lambda=%.2f)", len(selected), len(pool), lam)
        return selected

    @staticmethod
    def _value(candidate: Candidate, max_sim: float, lam: float, *, first: bool) -> float:
        if first:
            return candidate.score
        return lam * candidate.score - (1.0 - lam) * max_sim


def _check_lambda(value: float) -> float:
    if not 0.0 <= value <= 1.0:
        raise ValidationError("MMR lambda must be in [0, 1]", field="lambda", value=value)
    return float(value)


__all__ = ["MMRSelector", "Similarity", "node_similarity"]
