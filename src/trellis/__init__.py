"""Trellis: retrieval-augmented memory over a knowledge graph of embedded facts."""

from __future__ import annotations

from .config import MemoryConfig, ScorerWeights
from .errors import (
    BackendUnavailableError,
    ConfigurationError,
    ConflictError,
    DimensionMismatchError,
    NotFoundError,
    PartialWriteError,
    TrellisError,
    ValidationError,
)
from .logging_setup import configure_logging
from .memory import MemoryBundle, MemoryEngine, MemoryHit, MemoryNode, PruneReport

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "MemoryConfig",
    "ScorerWeights",
    "MemoryEngine",
    "MemoryNode",
    "MemoryBundle",
    "MemoryHit",
    "PruneReport",
    "configure_logging",
    "TrellisError",
    "ValidationError",
    "DimensionMismatchError",
    "NotFoundError",
    "BackendUnavailableError",
    "ConflictError",
    "PartialWriteError",
    "ConfigurationError",
]
