"""External embedding-provider interface.

The engine never computes embeddings itself. Callers that want to ingest or
query by text supply an EmbeddingProvider; any failure it raises is treated
as that facet being unavailable for the request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, Sequence, runtime_checkable

import numpy as np

from ..errors import BackendUnavailableError

logger = logging.getLogger(__name__)

# Texts longer than this are truncated before embedding
MAX_TEXT_LENGTH = 10000


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into a vector for one named facet."""

    def embed(self, text: str, facet: str) -> Sequence[float] | np.ndarray:
        """Embed text for facet. Raise on failure."""
        ...


@dataclass
class FacetEmbeddings:
    """Per-facet embeddings for one text, with the facets that failed."""

    vectors: dict[str, np.ndarray] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"facets": sorted(self.vectors), "failed": dict(self.failed)}


def embed_facets(
    provider: EmbeddingProvider,
    text: str,
    facets: Iterable[str],
) -> FacetEmbeddings:
    """Embed text once per facet, dropping facets whose embedding fails.

    Raises:
        BackendUnavailableError: Every facet failed (or none was requested).
    """
    facets = list(facets)
    if len(text) > MAX_TEXT_LENGTH:
        text = text[:MAX_TEXT_LENGTH]

    result = FacetEmbeddings()
    for facet in facets:
        try:
            vec = provider.embed(text, facet)
            if vec is None:
                raise BackendUnavailableError(
                    f"Embedding provider returned nothing for facet '{facet}'",
                    backend="embedding",
                    operation="embed",
                )
            result.vectors[facet] = np.asarray(vec, dtype=np.float32)
        except Exception as e:
            # Provider errors are foreign; a failed facet is dropped for this request
            logger.warning(
                "Embedding failed for facet %s (text_length=%d): %s",
                facet,
                len(text),
                e,
            )
            result.failed[facet] = str(e)

    if not result.vectors:
        raise BackendUnavailableError(
            "Embedding provider failed for every facet",
            backend="embedding",
            operation="embed",
            context={"facets": facets, "failed": result.failed},
        )
    return result


__all__ = ["EmbeddingProvider", "FacetEmbeddings", "MAX_TEXT_LENGTH", "embed_facets"]
