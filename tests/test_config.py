"""Tests for config.py, settings.py and logging_setup.py.

- ScorerWeights validation and coercion
- MemoryConfig range checks and required options
- from_dict (snake_case and camelCase) and from_env
- Logging configuration
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

import pytest

from trellis.config import MemoryConfig, ScorerWeights
from trellis.errors import ConfigurationError

WEIGHTS = {"recency": 0.5, "usage": 0.3, "centrality": 0.2}


# =============================================================================
# ScorerWeights
# =============================================================================


class TestScorerWeights:
    """Test scorer weight validation."""

    def test_weights_must_sum_to_one(self) -> None:
        """Weights that do not sum to 1 are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            ScorerWeights(recency=0.5, usage=0.5, centrality=0.5).validate()
        assert exc_info.value.setting == "scorer_weights"

    def test_negative_weight_rejected(self) -> None:
        """A negative weight is rejected."""
        with pytest.raises(ConfigurationError):
            ScorerWeights(recency=1.2, usage=-0.2, centrality=0.0).validate()

    def test_from_mapping(self) -> None:
        """ScorerWeights.from_value accepts a mapping."""
        weights = ScorerWeights.from_value(WEIGHTS)
        assert weights == ScorerWeights(0.5, 0.3, 0.2)

    def test_from_sequence(self) -> None:
        """ScorerWeights.from_value accepts a three-item sequence."""
        assert ScorerWeights.from_value([0.2, 0.3, 0.5]).centrality == 0.5

    def test_missing_key(self) -> None:
        """A mapping without every weight is rejected."""
        with pytest.raises(ConfigurationError):
            ScorerWeights.from_value({"recency": 1.0})

    def test_to_dict_round_trip(self) -> None:
        """to_dict output builds equal weights."""
        weights = ScorerWeights(0.6, 0.3, 0.1)
        assert ScorerWeights.from_value(weights.to_dict()) == weights


# =============================================================================
# MemoryConfig
# =============================================================================


class TestMemoryConfig:
    """Test MemoryConfig defaults and validation."""

    def test_defaults(self) -> None:
        """Unset options take their documented defaults."""
        config = MemoryConfig(scorer_weights=WEIGHTS, recency_half_life=3600)

        assert config.graph_backend == "memory"
        assert config.default_vector_backend == "memory"
        assert config.top_k_per_facet == 20
        assert config.traversal_depth == 1
        assert config.mmr_lambda == 0.7
        assert config.max_memories is None
        assert isinstance(config.scorer_weights, ScorerWeights)

    def test_bad_weights_rejected(self) -> None:
        """Invalid scorer weights raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            MemoryConfig(
                scorer_weights={"recency": 0.9, "usage": 0.9, "centrality": 0.0},
                recency_half_life=3600,
            )

    @pytest.mark.parametrize(
        ("option", "value"),
        [
            ("mmr_lambda", 1.5),
            ("mmr_lambda", -0.1),
            ("distance_decay", 0.0),
            ("top_k_per_facet", 0),
            ("traversal_depth", -1),
            ("eviction_score_threshold", 2.0),
            ("graph_backend", "cassandra"),
            ("facet_dimensions", {"topic": 0}),
            ("recency_half_life", 0),
            ("max_memories", 0),
        ],
    )
    def test_invalid_values(self, option: str, value: object) -> None:
        """Out-of-range options raise ConfigurationError."""
        options = {"scorer_weights": WEIGHTS, "recency_half_life": 3600, option: value}
        with pytest.raises(ConfigurationError) as exc_info:
            MemoryConfig(**options)
        assert option in exc_info.value.setting

    def test_backend_for_facet(self) -> None:
        """Facets use their override backend or the default."""
        config = MemoryConfig(
            scorer_weights=WEIGHTS,
            recency_half_life=3600,
            vector_backends={"style": "sqlite"},
        )
        assert config.backend_for_facet("style") == "sqlite"
        assert config.backend_for_facet("topic") == "memory"

    def test_with_overrides_revalidates(self) -> None:
        """with_overrides validates the new values."""
        config = MemoryConfig(scorer_weights=WEIGHTS, recency_half_life=3600)

        assert config.with_overrides(mmr_lambda=0.2).mmr_lambda == 0.2
        with pytest.raises(ConfigurationError):
            config.with_overrides(mmr_lambda=3.0)

    def test_to_dict(self, tmp_path: Path) -> None:
        """to_dict serializes paths and nested values."""
        config = MemoryConfig(
            scorer_weights=WEIGHTS,
            recency_half_life=3600,
            sqlite_path=tmp_path / "x.db",
        )
        data = config.to_dict()

        assert data["scorer_weights"] == WEIGHTS
        assert data["sqlite_path"] == str(tmp_path / "x.db")


class TestConfigConstructors:
    """Test from_dict and from_env."""

    def test_from_dict_accepts_camel_case(self) -> None:
        """from_dict accepts camelCase option names."""
        config = MemoryConfig.from_dict(
            {
                "scorerWeights": WEIGHTS,
                "recencyHalfLife": 60,
                "facetDimensions": {"role": 8},
                "mmrLambda": 0.4,
                "topKPerFacet": 5,
                "protectionEdgeWeight": 0.8,
                "pruningTTL": 120,
                "scoreThreshold": 0.3,
            }
        )

        assert config.facet_dimensions == {"role": 8}
        assert config.mmr_lambda == 0.4
        assert config.top_k_per_facet == 5
        assert config.protection_edge_weight == 0.8
        assert config.pruning_ttl == 120
        assert config.eviction_score_threshold == 0.3

    def test_from_dict_requires_weights_and_half_life(self) -> None:
        """from_dict requires scorer weights and the recency half-life."""
        with pytest.raises(ConfigurationError) as exc_info:
            MemoryConfig.from_dict({"scorer_weights": WEIGHTS})
        assert exc_info.value.setting == "recency_half_life"

    def test_from_dict_rejects_unknown_option(self) -> None:
        """from_dict rejects unknown options."""
        with pytest.raises(ConfigurationError):
            MemoryConfig.from_dict(
                {"scorer_weights": WEIGHTS, "recency_half_life": 1, "bogus": 1}
            )

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """from_env reads TRELLIS_ variables, with JSON for mappings."""
        monkeypatch.setenv("TEST_TRELLIS_SCORER_WEIGHTS", '{"recency": 1, "usage": 0, "centrality": 0}')
        monkeypatch.setenv("TEST_TRELLIS_RECENCY_HALF_LIFE", "30")
        monkeypatch.setenv("TEST_TRELLIS_TOP_K_PER_FACET", "7")
        monkeypatch.setenv("TEST_TRELLIS_FACET_DIMENSIONS", '{"topic": 16}')

        config = MemoryConfig.from_env("TEST_TRELLIS_", mmr_lambda=0.9)

        assert config.recency_half_life == 30.0
        assert config.top_k_per_facet == 7
        assert config.facet_dimensions == {"topic": 16}
        assert config.mmr_lambda == 0.9

    def test_from_env_bad_number(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """from_env reports a malformed number as ConfigurationError."""
        monkeypatch.setenv("TEST_TRELLIS_TOP_K_PER_FACET", "many")
        with pytest.raises(ConfigurationError):
            MemoryConfig.from_env("TEST_TRELLIS_")


# =============================================================================
# Settings and Logging
# =============================================================================


class TestSettings:
    """Test process settings."""

    def test_default_sqlite_path_under_data_dir(self) -> None:
        """The default database lives in the data directory."""
        from trellis.settings import settings

        assert settings.default_sqlite_path.parent == settings.data_dir


class TestConfigureLogging:
    """Test logging_setup.configure_logging."""

    def test_installs_rotating_file_handler(self, tmp_path: Path) -> None:
        """configure_logging attaches a rotating file handler."""
        from trellis.logging_setup import configure_logging

        log_path = tmp_path / "logs" / "trellis.log"
        logger = configure_logging("DEBUG", log_path, stderr=False)
        try:
            handlers = [h for h in logger.handlers if getattr(h, "_trellis_handler", False)]
            assert len(handlers) == 1
            assert isinstance(handlers[0], logging.handlers.RotatingFileHandler)
            assert logger.level == logging.DEBUG

            logging.getLogger("trellis.memory.test").info("hello %s", "world")
            handlers[0].flush()
            assert "hello world" in log_path.read_text(encoding="utf-8")
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()

    def test_idempotent(self, tmp_path: Path) -> None:
        """Repeated calls replace handlers instead of stacking them."""
        from trellis.logging_setup import configure_logging

        log_path = tmp_path / "trellis.log"
        configure_logging("INFO", log_path)
        logger = configure_logging("INFO", log_path)
        try:
            marked = [h for h in logger.handlers if getattr(h, "_trellis_handler", False)]
            assert len(marked) == 2  # file + stderr, not duplicated
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
