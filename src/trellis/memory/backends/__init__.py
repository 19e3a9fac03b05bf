"""Storage backends for the memory graph.

One adapter per storage technology, all implementing BackendAdapter:
- "memory": InMemoryBackend (reference implementation)
- "sqlite": SQLiteBackend (relational tables + numpy vector search)
"""

from __future__ import annotations

from pathlib import Path

from ...config import BACKEND_KINDS
from ...errors import ConfigurationError
from ...settings import settings
from .base import BackendAdapter, expand_edges
from .memory import InMemoryBackend
from .sqlite import SQLiteBackend


def create_backend(kind: str, *, path: str | Path | None = None, name: str | None = None) -> BackendAdapter:
    """Create a backend adapter by kind.

    Args:
        kind: "memory" or "sqlite".
        path: Database file for sqlite (defaults to <data_dir>/trellis.db).
        name: Optional label for in-memory backends (used in logs).

    Raises:
        ConfigurationError: Unknown kind.
    """
    if kind == "memory":
        return InMemoryBackend(name=name or "memory")
    if kind == "sqlite":
        return SQLiteBackend(path or settings.default_sqlite_path)
    raise ConfigurationError(
        f"Unknown backend kind '{kind}'",
        setting="backend",
        expected=" | ".join(sorted(BACKEND_KINDS)),
    )


__all__ = [
    "BackendAdapter",
    "InMemoryBackend",
    "SQLiteBackend",
    "create_backend",
    "expand_edges",
]
