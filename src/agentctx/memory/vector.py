"""Embedding and vector-search collaborators.

Production deployments plug real services in through ``EmbeddingService``
and ``VectorIndex``.  ``HashingEmbedder`` and ``InMemoryVectorIndex`` are
deterministic in-process defaults.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Protocol
from typing import runtime_checkable

import numpy as np

from agentctx.memory.scoring import tokenize


@runtime_checkable
class EmbeddingService(Protocol):
    """Turns text into a dense vector."""

    async def embed(self, text: str) -> list[float]: ...


@dataclass(frozen=True)
class VectorMatch:
    id: str
    score: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class VectorIndex(Protocol):
    """Nearest-neighbour search filtered by metadata equality."""

    async def upsert(
        self, item_id: str, vector: Sequence[float], metadata: Mapping[str, Any]
    ) -> None: ...

    async def search(
        self, vector: Sequence[float], filter: Mapping[str, Any], k: int
    ) -> list[VectorMatch]: ...

    async def delete(self, item_id: str) -> None: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 when the vectors are empty, zero or of unequal length."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(va @ vb / (na * nb))


class HashingEmbedder:
    """Feature-hashing bag-of-words embedder.

    Stable across processes (uses SHA-1, not ``hash()``), so equal text
    always yields equal vectors.
    """

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions < 8:
            raise ValueError("dimensions must be >= 8")
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> list[float]:
        vector = np.zeros(self._dimensions, dtype=np.float32)
        for token in sorted(tokenize(text)):
            digest = hashlib.sha1(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % self._dimensions
            vector[index] += 1.0 if digest[4] & 1 else -1.0
        norm = np.linalg.norm(vector)
        if norm:
            vector /= norm
        return vector.tolist()


class InMemoryVectorIndex:
    """Brute-force cosine index kept in process memory.

    Vectors are held as float32 arrays.  A search stacks the entries that
    pass the metadata filter and scores them with one matrix product.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, np.ndarray] = {}
        self._metadata: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    async def upsert(
        self, item_id: str, vector: Sequence[float], metadata: Mapping[str, Any]
    ) -> None:
        self._vectors[item_id] = np.asarray(vector, dtype=np.float32)
        self._metadata[item_id] = dict(metadata)

    async def search(
        self, vector: Sequence[float], filter: Mapping[str, Any], k: int
    ) -> list[VectorMatch]:
        query = np.asarray(vector, dtype=np.float32)
        ids = [
            item_id
            for item_id, meta in self._metadata.items()
            if all(meta.get(key) == value for key, value in filter.items())
        ]
        if not ids or k <= 0:
            return []

        # Entries of another dimensionality keep a score of 0.0.
        scores = np.zeros(len(ids), dtype=np.float32)
        rows = [n for n, item_id in enumerate(ids) if self._vectors[item_id].shape == query.shape]
        query_norm = np.linalg.norm(query)
        if rows and query_norm:
            matrix = np.stack([self._vectors[ids[n]] for n in rows])
            dots = matrix @ query
            norms = np.linalg.norm(matrix, axis=1) * query_norm
            scores[rows] = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        matches = [
            VectorMatch(id=item_id, score=float(score), metadata=self._metadata[item_id])
            for item_id, score in zip(ids, scores)
        ]
        matches.sort(key=lambda m: (-m.score, m.id))
        return matches[:k]

    async def delete(self, item_id: str) -> None:
        self._vectors.pop(item_id, None)
        self._metadata.pop(item_id, None)
