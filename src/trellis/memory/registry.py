"""VectorSpace registry: facet name → dimensionality.

A facet must be registered before any node using it is written. Once a
facet has indexed nodes its dimensionality is fixed.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Iterable, Mapping, Sequence

import numpy as np

from ..errors import DimensionMismatchError, ValidationError
from .vectors import as_vector

logger = logging.getLogger(__name__)


class VectorSpaceRegistry:
    """Thread-safe registry of facet dimensionalities and facet usage counts."""

    def __init__(self, dimensions: Mapping[str, int] | None = None) -> None:
        self._dims: dict[str, int] = {}
        self._usage: Counter[str] = Counter()
        self._lock = threading.Lock()
        for facet, dim in (dimensions or {}).items():
            self.register(facet, dim)

    def register(self, facet: str, dim: int) -> None:
        """Register a facet, or confirm an existing registration.

        Raises:
            ValidationError: Bad name/dimension, or the facet already has
                nodes under a different dimensionality.
        """
        if not isinstance(facet, str) or not facet:
            raise ValidationError("Facet name must be a non-empty string", field="facet", value=facet)
        if isinstance(dim, bool) or not isinstance(dim, int) or dim <= 0:
            raise ValidationError(
                f"Dimension for facet '{facet}' must be a positive integer",
                field="dimension",
                value=dim,
            )

        with self._lock:
            current = self._dims.get(facet)
            if current == dim:
                return
            if current is not None and self._usage[facet] > 0:
                raise ValidationError(
                    f"Facet '{facet}' already has nodes with dimension {current}",
                    field="facet",
                    value=facet,
                    constraint="immutable",
                )
            self._dims[facet] = dim
        logger.debug("Registered facet %s (dim=%d)", facet, dim)

    def dimension(self, facet: str) -> int:
        with self._lock:
            dim = self._dims.get(facet)
        if dim is None:
            raise ValidationError(
                f"Facet '{facet}' is not registered",
                field="facet",
                value=facet,
                constraint="registered",
            )
        return dim

    def __contains__(self, facet: object) -> bool:
        with self._lock:
            return facet in self._dims

    def facets(self) -> list[str]:
        with self._lock:
            return sorted(self._dims)

    def validate(self, facet: str, values: Sequence[float] | np.ndarray) -> np.ndarray:
        """Coerce a vector and check it against the registered dimension."""
        expected = self.dimension(facet)
        vec = as_vector(values, facet=facet)
        if vec.shape[0] != expected:
            raise DimensionMismatchError(
                f"Facet '{facet}' expects dimension {expected}, got {vec.shape[0]}",
                facet=facet,
                expected=expected,
                actual=int(vec.shape[0]),
            )
        return vec

    def validate_all(
        self,
        vectors: Mapping[str, Sequence[float] | np.ndarray],
    ) -> dict[str, np.ndarray]:
        """Validate a facet → vector mapping. At least one facet is required."""
        if not vectors:
            raise ValidationError(
                "At least one facet vector is required",
                field="facet_vectors",
                constraint="non-empty",
            )
        return {facet: self.validate(facet, values) for facet, values in vectors.items()}

    # -------------------------------------------------------------------------
    # Usage tracking
    # -------------------------------------------------------------------------

    def mark_indexed(self, facets: Iterable[str]) -> None:
        with self._lock:
            for facet in facets:
                self._usage[facet] += 1

    def mark_removed(self, facets: Iterable[str]) -> None:
        with self._lock:
            for facet in facets:
                if self._usage[facet] > 0:
                    self._usage[facet] -= 1

    def usage(self, facet: str) -> int:
        with self._lock:
            return self._usage[facet]

    def to_dict(self) -> dict[str, int]:
        with self._lock:
            return dict(self._dims)


__all__ = ["VectorSpaceRegistry"]
