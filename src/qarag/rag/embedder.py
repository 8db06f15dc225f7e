"""Batched text embedding with in-call deduplication and dimension checks."""

from __future__ import annotations

import logging

from qarag.errors import DimensionMismatch
from qarag.rag.gateway import Gateway

logger = logging.getLogger(__name__)


class Embedder:
    """Turn texts into vectors through a Gateway.

    - Identical texts within one call are sent to the provider once.
    - Inputs are split into batches of at most ``batch_size``.
    - Every returned vector must share one dimension; when
      ``expected_dimension`` is given it must match that too.

    Provider failures propagate (ProviderUnavailable / ProviderFatalError).
    No zero-vector or random fallback is ever substituted.
    """

    def __init__(self, gateway: Gateway, batch_size: int = 64) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._gateway = gateway
        self.batch_size = batch_size

    async def embed(
        self, texts: list[str], expected_dimension: int | None = None
    ) -> list[list[float]]:
        """Return one vector per input text, in input order."""
        if not texts:
            return []

        unique: list[str] = list(dict.fromkeys(texts))
        if len(unique) < len(texts):
            logger.debug("Embedding %d texts (%d unique)", len(texts), len(unique))

        by_text: dict[str, list[float]] = {}
        for start in range(0, len(unique), self.batch_size):
            batch = unique[start : start + self.batch_size]
            vectors = await self._gateway.embed(batch)
            if len(vectors) != len(batch):
                raise ValueError(
                    f"Gateway returned {len(vectors)} vectors for a batch of {len(batch)}"
                )
            for text, vector in zip(batch, vectors):
                by_text[text] = list(vector)

        dimension = expected_dimension
        for vector in by_text.values():
            if dimension is None:
                dimension = len(vector)
            elif len(vector) != dimension:
                raise DimensionMismatch(dimension, len(vector))

        return [by_text[t] for t in texts]

    async def embed_one(self, text: str, expected_dimension: int | None = None) -> list[float]:
        return (await self.embed([text], expected_dimension))[0]
