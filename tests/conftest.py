from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from trellis.config import MemoryConfig
from trellis.memory.engine import MemoryEngine


class FakeClock:
    """Controllable clock for scorer and pruner tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def vec(*values: float) -> np.ndarray:
    """Float32 test vector."""
    return np.array(values, dtype=np.float32)


# Base options shared by every test config: 4-d "topic", 3-d "style",
# no backoff sleeps.
BASE_OPTIONS: dict[str, Any] = {
    "scorer_weights": {"recency": 0.6, "usage": 0.3, "centrality": 0.1},
    "recency_half_life": 3600.0,
    "facet_dimensions": {"topic": 4, "style": 3},
    "retry_wait_min": 0.0,
    "retry_wait_max": 0.0,
    "retry_wait_multiplier": 0.0,
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_config() -> Callable[..., MemoryConfig]:
    """Factory for test configs; keyword arguments override the base options."""

    def _make(**overrides: Any) -> MemoryConfig:
        return MemoryConfig(**{**BASE_OPTIONS, **overrides})

    return _make


@pytest.fixture
def config(make_config: Callable[..., MemoryConfig]) -> MemoryConfig:
    return make_config()


@pytest.fixture(params=["memory", "sqlite"])
def backend_kind(request: pytest.FixtureRequest) -> str:
    return request.param


@pytest.fixture
def make_engine(
    tmp_path: Path,
    clock: FakeClock,
    backend_kind: str,
    make_config: Callable[..., MemoryConfig],
) -> Iterator[Callable[..., MemoryEngine]]:
    """Factory for engines over the parametrized backend kind."""
    engines: list[MemoryEngine] = []

    def _make(**overrides: Any) -> MemoryEngine:
        options: dict[str, Any] = {
            "graph_backend": backend_kind,
            "default_vector_backend": backend_kind,
            "sqlite_path": tmp_path / "trellis.db",
        }
        options.update(overrides)
        engine_kwargs = options.pop("engine_kwargs", {})
        engine = MemoryEngine(make_config(**options), clock=clock, **engine_kwargs)
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine: Callable[..., MemoryEngine]) -> MemoryEngine:
    return make_engine()
