"""Importance scoring for memory nodes.

Score = weighted sum of three signals, each in [0, 1]:
- Recency: 0.5 ** (idle_seconds / half_life)
- Usage: log(1 + access_count) / log(1 + running max access_count)
- Centrality: weighted degree / running max weighted degree

Access refreshes never lower a stored score (reinforce); sweeps never
raise one (decay).
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime
from typing import Callable

from ..config import ScorerWeights
from .models import MemoryNode, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ImportanceScorer:
    """Computes node importance from recency, usage and graph centrality.

    Thread-safe. The usage and centrality normalizers are running maxima:
    they grow as nodes are observed and are rebuilt by the Pruner's sweep.
    """

    def __init__(
        self,
        weights: ScorerWeights,
        half_life: float,
        *,
        clock: Clock = utcnow,
    ) -> None:
        weights.validate()
        self.weights = weights
        self.half_life = half_life
        self._clock = clock
        self._max_access = 0
        self._max_degree = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Signals
    # =========================================================================

    def recency(self, node: MemoryNode, now: datetime | None = None) -> float:
        """1.0 right after an access, 0.5 after one half-life."""
        idle = node.idle_seconds(now or self.now())
        return math.pow(0.5, idle / self.half_life)

    def usage(self, access_count: int) -> float:
        with self._lock:
            peak = self._max_access
        if peak <= 0 or access_count <= 0:
            return 0.0
        return _clamp(math.log1p(access_count) / math.log1p(peak))

    def centrality(self, degree: float) -> float:
        with self._lock:
            peak = self._max_degree
        if peak <= 0 or degree <= 0:
            return 0.0
        return _clamp(degree / peak)

    def observe(self, access_count: int, degree: float) -> None:
        """Raise the running maxima if this node exceeds them."""
        with self._lock:
            if access_count > self._max_access:
                self._max_access = access_count
            if degree > self._max_degree:
                self._max_degree = degree

    def reset_maxima(self, max_access: int = 0, max_degree: float = 0.0) -> None:
        """Replace the running maxima (after a full scan of the graph)."""
        with self._lock:
            self._max_access = max(0, max_access)
            self._max_degree = max(0.0, max_degree)
        logger.debug("Scorer maxima reset (access=%d, degree=%.3f)", max_access, max_degree)

    @property
    def maxima(self) -> tuple[int, float]:
        with self._lock:
            return self._max_access, self._max_degree

    # =========================================================================
    # Scores
    # =========================================================================

    def score(self, node: MemoryNode, degree: float = 0.0, now: datetime | None = None) -> float:
        """Raw weighted score for a node, ignoring its stored importance."""
        self.observe(node.access_count, degree)
        w = self.weights
        value = (
            w.recency * self.recency(node, now)
            + w.usage * self.usage(node.access_count)
            + w.centrality * self.centrality(degree)
        )
        return _clamp(value)

    def initial(self, node: MemoryNode, degree: float = 0.0) -> float:
        """Score for a freshly ingested node."""
        return self.score(node, degree, node.last_accessed)

    def reinforce(self, node: MemoryNode, degree: float = 0.0, now: datetime | None = None) -> float:
        """Score after an access. Never lower than the stored importance."""
        return max(node.importance, self.score(node, degree, now))

    def decay(self, node: MemoryNode, degree: float = 0.0, now: datetime | None = None) -> float:
        """Score refresh without an access. Never higher than the stored importance."""
        return min(node.importance, self.score(node, degree, now))


__all__ = ["Clock", "ImportanceScorer"]
