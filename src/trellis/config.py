"""Engine configuration for Trellis.

This module provides a single source of truth for:
- Backend selection (graph store and per-facet vector backends)
- Facet dimensionalities
- Retrieval tuning (top-k, traversal depth, MMR lambda, distance decay)
- Importance scoring weights and recency half-life
- Pruning thresholds and interval
- Retry and deadline budgets

Scorer weights and the recency half-life have no built-in defaults: they
must be supplied explicitly, in code, in a mapping or via the environment.
All durations are in seconds.
"""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigurationError

BACKEND_KINDS = frozenset({"memory", "sqlite"})

_DAY = 86400.0


# =============================================================================
# Scorer Weights
# =============================================================================


@dataclass(frozen=True)
class ScorerWeights:
    """Weights of the three importance signals. Must sum to 1."""

    recency: float
    usage: float
    centrality: float

    def validate(self) -> None:
        values = {"recency": self.recency, "usage": self.usage, "centrality": self.centrality}
        for name, value in values.items():
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
                raise ConfigurationError(
                    f"Scorer weight '{name}' must be a non-negative number",
                    setting=f"scorer_weights.{name}",
                    expected=">= 0",
                )
        total = self.recency + self.usage + self.centrality
        if abs(total - 1.0) > 1e-6:
            raise ConfigurationError(
                f"Scorer weights must sum to 1 (got {total:.6f})",
                setting="scorer_weights",
                expected="recency + usage + centrality == 1",
            )

    @classmethod
    def from_value(cls, value: Any) -> "ScorerWeights":
        """Build from a ScorerWeights, a mapping or a 3-sequence."""
        if isinstance(value, ScorerWeights):
            return value
        if isinstance(value, Mapping):
            try:
                return cls(
                    recency=float(value["recency"]),
                    usage=float(value["usage"]),
                    centrality=float(value["centrality"]),
                )
            except KeyError as e:
                raise ConfigurationError(
                    f"Scorer weights missing key {e}",
                    setting="scorer_weights",
                    expected="{recency, usage, centrality}",
                ) from e
        if isinstance(value, (list, tuple)) and len(value) == 3:
            return cls(*(float(v) for v in value))
        raise ConfigurationError(
            "Scorer weights must be a mapping or a 3-sequence",
            setting="scorer_weights",
        )

    def to_dict(self) -> dict[str, float]:
        return {"recency": self.recency, "usage": self.usage, "centrality": self.centrality}


# =============================================================================
# Memory Engine Configuration
# =============================================================================


# camelCase option names accepted by from_dict()
_ALIASES = {
    "backendKind": "graph_backend",
    "graphBackend": "graph_backend",
    "vectorBackends": "vector_backends",
    "defaultVectorBackend": "default_vector_backend",
    "sqlitePath": "sqlite_path",
    "maxMemories": "max_memories",
    "facetDimensions": "facet_dimensions",
    "pruningTTL": "pruning_ttl",
    "scoreThreshold": "eviction_score_threshold",
    "evictionScoreThreshold": "eviction_score_threshold",
    "protectionEdgeWeight": "protection_edge_weight",
    "mmrLambda": "mmr_lambda",
    "topKPerFacet": "top_k_per_facet",
    "traversalDepth": "traversal_depth",
    "scorerWeights": "scorer_weights",
    "recencyHalfLife": "recency_half_life",
    "distanceDecay": "distance_decay",
    "semanticThreshold": "semantic_threshold",
    "expansionFanout": "expansion_fanout",
    "queryTimeout": "query_timeout",
    "pruneInterval": "prune_interval",
    "retryAttempts": "retry_attempts",
    "conflictRetries": "conflict_retries",
}


@dataclass(frozen=True)
class MemoryConfig:
    """Configuration for a MemoryEngine.

    Example:
        config = MemoryConfig(
            scorer_weights=ScorerWeights(recency=0.5, usage=0.3, centrality=0.2),
            recency_half_life=7 * 86400,
            facet_dimensions={"role": 384, "skill": 384},
        )
    """

    scorer_weights: ScorerWeights
    recency_half_life: float

    # Backends
    graph_backend: str = "memory"
    default_vector_backend: str = "memory"
    vector_backends: dict[str, str] = field(default_factory=dict)
    sqlite_path: Path | None = None

    # Facets
    facet_dimensions: dict[str, int] = field(default_factory=dict)

    # Retrieval
    top_k_per_facet: int = 20
    traversal_depth: int = 1
    mmr_lambda: float = 0.7
    distance_decay: float = 0.5
    semantic_threshold: float = 0.0
    expansion_fanout: int = 4
    query_timeout: float = 5.0

    # Pruning
    max_memories: int | None = None
    pruning_ttl: float = 7 * _DAY
    eviction_score_threshold: float = 0.2
    protection_edge_weight: float = 0.9
    prune_interval: float = 3600.0

    # Retry budgets
    retry_attempts: int = 3
    retry_wait_min: float = 0.05
    retry_wait_max: float = 1.0
    retry_wait_multiplier: float = 0.05
    conflict_retries: int = 5

    def __post_init__(self) -> None:
        # Accept mappings for weights so callers can pass plain dicts
        object.__setattr__(self, "scorer_weights", ScorerWeights.from_value(self.scorer_weights))
        object.__setattr__(self, "facet_dimensions", dict(self.facet_dimensions))
        object.__setattr__(self, "vector_backends", dict(self.vector_backends))
        if self.sqlite_path is not None:
            object.__setattr__(self, "sqlite_path", Path(self.sqlite_path))
        self.validate()

    def validate(self) -> None:
        """Validate ranges. Raises ConfigurationError on the first violation."""
        self.scorer_weights.validate()

        _require(self.recency_half_life > 0, "recency_half_life", "> 0")
        _require(self.graph_backend in BACKEND_KINDS, "graph_backend", _kinds())
        _require(self.default_vector_backend in BACKEND_KINDS, "default_vector_backend", _kinds())
        for facet, kind in self.vector_backends.items():
            _require(kind in BACKEND_KINDS, f"vector_backends.{facet}", _kinds())
        for facet, dim in self.facet_dimensions.items():
            _require(
                isinstance(facet, str) and bool(facet) and isinstance(dim, int) and dim > 0,
                f"facet_dimensions.{facet}",
                "non-empty name and positive integer dimension",
            )

        _require(self.top_k_per_facet >= 1, "top_k_per_facet", ">= 1")
        _require(self.traversal_depth >= 0, "traversal_depth", ">= 0")
        _require(0.0 <= self.mmr_lambda <= 1.0, "mmr_lambda", "0 <= value <= 1")
        _require(0.0 < self.distance_decay <= 1.0, "distance_decay", "0 < value <= 1")
        _require(0.0 <= self.semantic_threshold <= 1.0, "semantic_threshold", "0 <= value <= 1")
        _require(self.expansion_fanout >= 1, "expansion_fanout", ">= 1")
        _require(self.query_timeout > 0, "query_timeout", "> 0")

        _require(self.max_memories is None or self.max_memories >= 1, "max_memories", ">= 1")
        _require(self.pruning_ttl >= 0, "pruning_ttl", ">= 0")
        _require(
            0.0 <= self.eviction_score_threshold <= 1.0,
            "eviction_score_threshold",
            "0 <= value <= 1",
        )
        _require(self.protection_edge_weight >= 0, "protection_edge_weight", ">= 0")
        _require(self.prune_interval > 0, "prune_interval", "> 0")

        _require(self.retry_attempts >= 1, "retry_attempts", ">= 1")
        _require(self.retry_wait_min >= 0, "retry_wait_min", ">= 0")
        _require(self.retry_wait_max >= self.retry_wait_min, "retry_wait_max", ">= retry_wait_min")
        _require(self.retry_wait_multiplier >= 0, "retry_wait_multiplier", ">= 0")
        _require(self.conflict_retries >= 1, "conflict_retries", ">= 1")

    def backend_for_facet(self, facet: str) -> str:
        """Backend kind holding the given facet's vectors."""
        return self.vector_backends.get(facet, self.default_vector_backend)

    def with_overrides(self, **changes: Any) -> "MemoryConfig":
        """Return a copy with some fields replaced (re-validated)."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, ScorerWeights):
                value = value.to_dict()
            elif isinstance(value, Path):
                value = str(value)
            data[f.name] = value
        return data

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MemoryConfig":
        """Build from a mapping using snake_case or camelCase keys."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise ConfigurationError(
                    f"Unknown configuration option '{key}'",
                    setting=key,
                )
            kwargs[name] = value
        for required in ("scorer_weights", "recency_half_life"):
            if required not in kwargs:
                raise ConfigurationError(
                    f"Missing required configuration option '{required}'",
                    setting=required,
                    suggestion="Scorer weights and decay half-life have no defaults",
                )
        return cls(**kwargs)

    @classmethod
    def from_env(cls, prefix: str = "TRELLIS_", **overrides: Any) -> "MemoryConfig":
        """Build from environment variables (``<prefix><FIELD_NAME>``).

        Mappings (scorer weights, facet dimensions, vector backends) are JSON.
        Explicit keyword overrides win over the environment.
        """
        data: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(prefix + f.name.upper())
            if raw is None:
                continue
            data[f.name] = _parse_env(f.name, raw)
        data.update(overrides)
        return cls.from_dict(data)


# =============================================================================
# Helpers
# =============================================================================


_INT_FIELDS = {
    "top_k_per_facet",
    "traversal_depth",
    "expansion_fanout",
    "max_memories",
    "retry_attempts",
    "conflict_retries",
}
_JSON_FIELDS = {"scorer_weights", "facet_dimensions", "vector_backends"}
_STR_FIELDS = {"graph_backend", "default_vector_backend", "sqlite_path"}


def _parse_env(name: str, raw: str) -> Any:
    try:
        if name in _JSON_FIELDS:
            return json.loads(raw)
        if name in _STR_FIELDS:
            return raw
        if name in _INT_FIELDS:
            return int(raw)
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Cannot parse environment value for '{name}': {e}",
            setting=name,
        ) from e


def _kinds() -> str:
    return " | ".join(sorted(BACKEND_KINDS))


def _require(condition: bool, setting: str, expected: str) -> None:
    if not condition:
        raise ConfigurationError(
            f"Invalid configuration value for '{setting}'",
            setting=setting,
            expected=expected,
        )


__all__ = ["BACKEND_KINDS", "MemoryConfig", "ScorerWeights"]
