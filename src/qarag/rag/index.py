"""Per-project in-memory vector index with cosine top-K search.

One VectorIndex holds every chunk of exactly one project. Chunks from any
other project are rejected. The embedding dimension is fixed per index:
either passed at construction or taken from the first insert.

Results are ordered by descending cosine similarity; ties are broken by
insertion position (earlier document first, then chunk ordinal).
"""

from __future__ import annotations

import json
import threading
from typing import Any

import numpy as np

from qarag.errors import DimensionMismatch
from qarag.models import Chunk, SearchHit

_FORMAT_VERSION = 1


class VectorIndex:
    def __init__(self, project_id: str, dimension: int | None = None) -> None:
        if dimension is not None and dimension < 1:
            raise ValueError("dimension must be >= 1")
        self.project_id = project_id
        self._dimension = dimension
        self._chunks: list[Chunk] = []
        self._matrix: np.ndarray | None = None  # rebuilt lazily after writes
        self._lock = threading.RLock()

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def chunks(self) -> list[Chunk]:
        with self._lock:
            return list(self._chunks)

    def document_ids(self) -> list[str]:
        """Distinct document ids in insertion order."""
        with self._lock:
            return list(dict.fromkeys(c.document_id for c in self._chunks))

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, chunks: list[Chunk]) -> None:
        """Append embedded chunks. The whole batch is checked before any is stored.

        Raises:
            ValueError: A chunk belongs to another project or has no embedding.
            DimensionMismatch: A vector's length differs from the index dimension.
        """
        if not chunks:
            return
        with self._lock:
            dimension = self._dimension
            for chunk in chunks:
                if chunk.project_id != self.project_id:
                    raise ValueError(
                        f"Chunk {chunk.id!r} belongs to project {chunk.project_id!r}, "
                        f"not {self.project_id!r}"
                    )
                if not chunk.embedding:
                    raise ValueError(f"Chunk {chunk.id!r} has no embedding")
                if dimension is None:
                    dimension = len(chunk.embedding)
                elif len(chunk.embedding) != dimension:
                    raise DimensionMismatch(dimension, len(chunk.embedding))
            self._dimension = dimension
            # Replace rather than extend so in-flight searches keep a consistent snapshot.
            self._chunks = self._chunks + list(chunks)
            self._matrix = None

    def replace_document(self, document_id: str, chunks: list[Chunk]) -> int:
        """Swap every chunk of *document_id* for *chunks* in one step.

        The new chunks are validated before the old ones are dropped, so a
        rejected batch leaves the index unchanged. Returns the number removed.
        """
        if any(c.document_id != document_id for c in chunks):
            raise ValueError(f"All chunks must belong to document {document_id!r}")
        with self._lock:
            previous_chunks, previous_dimension = self._chunks, self._dimension
            removed = self.remove(document_id)
            try:
                self.add(chunks)
            except (ValueError, DimensionMismatch):
                self._chunks, self._dimension = previous_chunks, previous_dimension
                self._matrix = None
                raise
            return removed

    def remove(self, document_id: str) -> int:
        """Delete every chunk of *document_id*. Returns the number removed."""
        with self._lock:
            kept = [c for c in self._chunks if c.document_id != document_id]
            removed = len(self._chunks) - len(kept)
            if removed:
                self._chunks = kept
                self._matrix = None
            return removed

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query_vector: list[float],
        k: int,
        min_similarity: float | None = None,
    ) -> list[SearchHit]:
        """Return up to *k* hits at or above *min_similarity*.

        Raises:
            DimensionMismatch: *query_vector* has the wrong length.
        """
        if k <= 0:
            return []
        with self._lock:
            if not self._chunks:
                return []
            if self._dimension is not None and len(query_vector) != self._dimension:
                raise DimensionMismatch(self._dimension, len(query_vector))
            matrix = self._normalized_matrix()
            chunks = self._chunks

        query = np.asarray(query_vector, dtype=np.float64)
        q_norm = np.linalg.norm(query)
        if q_norm == 0:
            sims = np.zeros(len(chunks))
        else:
            sims = matrix @ (query / q_norm)

        order = np.lexsort((np.arange(len(chunks)), -sims))
        hits: list[SearchHit] = []
        for i in order:
            sim = float(sims[i])
            if min_similarity is not None and sim < min_similarity:
                break
            hits.append(SearchHit(chunk=chunks[i], similarity=sim))
            if len(hits) == k:
                break
        return hits

    def _normalized_matrix(self) -> np.ndarray:
        if self._matrix is None:
            matrix = np.asarray([c.embedding for c in self._chunks], dtype=np.float64)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            self._matrix = matrix / norms
        return self._matrix

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version": _FORMAT_VERSION,
                "project_id": self.project_id,
                "dimension": self._dimension,
                "chunks": [_chunk_to_dict(c) for c in self._chunks],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VectorIndex:
        version = data.get("version")
        if version != _FORMAT_VERSION:
            raise ValueError(f"Unsupported index format version: {version!r}")
        index = cls(str(data["project_id"]), data.get("dimension"))
        index.add([_chunk_from_dict(index.project_id, c) for c in data.get("chunks", [])])
        return index

    def serialize(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes) -> VectorIndex:
        return cls.from_dict(json.loads(data.decode("utf-8")))


def _chunk_to_dict(chunk: Chunk) -> dict[str, Any]:
    return {
        "id": chunk.id,
        "document_id": chunk.document_id,
        "text": chunk.text,
        "ordinal": chunk.ordinal,
        "char_range": list(chunk.char_range),
        "section": chunk.section,
        "embedding": list(chunk.embedding),
    }


def _chunk_from_dict(project_id: str, raw: dict[str, Any]) -> Chunk:
    start, end = raw["char_range"]
    return Chunk(
        id=str(raw["id"]),
        project_id=project_id,
        document_id=str(raw["document_id"]),
        text=str(raw["text"]),
        ordinal=int(raw["ordinal"]),
        char_range=(int(start), int(end)),
        section=raw.get("section"),
        embedding=tuple(float(v) for v in raw["embedding"]),
    )
