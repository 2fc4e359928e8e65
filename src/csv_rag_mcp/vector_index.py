"""
Vector Index - stores (id, vector, metadata) and answers nearest-neighbor queries.

Distance is always Euclidean. Two backends share one interface:
    InMemoryVectorIndex: numpy-backed, exact, ties broken by insertion order
    ChromaVectorIndex: a ChromaDB collection using the "l2" space
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
from urllib.parse import urlparse

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class QueryHit:
    """One query result, ordered by ascending distance."""
    id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    distance: float = 0.0


def _check_batch(ids: Sequence[str], vectors: Sequence[Sequence[float]],
                 metadatas: Sequence[dict[str, Any]]) -> None:
    if not (len(ids) == len(vectors) == len(metadatas)):
        raise ValueError(
            f"upsert batch length mismatch: {len(ids)} ids, "
            f"{len(vectors)} vectors, {len(metadatas)} metadatas"
        )


class VectorIndex(ABC):
    """Abstract interface for vector storage."""

    @abstractmethod
    def upsert(self, ids: Sequence[str], vectors: Sequence[Sequence[float]],
               metadatas: Sequence[dict[str, Any]]) -> None:
        """Insert or overwrite vectors by id."""

    @abstractmethod
    def query(self, vector: Sequence[float], k: int) -> list[QueryHit]:
        """Return up to k nearest vectors by ascending Euclidean distance."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored vectors."""


class InMemoryVectorIndex(VectorIndex):
    """
    Exact in-memory index.

    Overwriting an id keeps its original insertion position, so tie order
    is the order in which ids were first stored.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[np.ndarray, dict[str, Any]]] = {}
        self._dimension: Optional[int] = None

    def upsert(self, ids, vectors, metadatas) -> None:
        _check_batch(ids, vectors, metadatas)
        for id_, vector, metadata in zip(ids, vectors, metadatas):
            arr = np.asarray(vector, dtype=float)
            if arr.ndim != 1 or arr.size == 0:
                raise ValueError(f"Vector for '{id_}' must be a non-empty 1-D sequence")
            if self._dimension is None:
                self._dimension = arr.size
            elif arr.size != self._dimension:
                raise ValueError(
                    f"Vector for '{id_}' has dimension {arr.size}, index expects {self._dimension}"
                )
            self._entries[id_] = (arr, dict(metadata or {}))

    def query(self, vector, k: int) -> list[QueryHit]:
        if not self._entries or k < 1:
            return []

        q = np.asarray(vector, dtype=float)
        if q.ndim != 1 or q.size != self._dimension:
            raise ValueError(
                f"Query vector has dimension {q.size}, index expects {self._dimension}"
            )

        ids = list(self._entries)
        matrix = np.stack([self._entries[i][0] for i in ids])
        distances = np.linalg.norm(matrix - q, axis=1)
        order = np.argsort(distances, kind="stable")[:k]

        return [
            QueryHit(id=ids[i], metadata=dict(self._entries[ids[i]][1]), distance=float(distances[i]))
            for i in order
        ]

    def count(self) -> int:
        return len(self._entries)


class ChromaVectorIndex(VectorIndex):
    """
    ChromaDB-backed index.

    Uses an HTTP client when ``chroma_url`` is given, otherwise an ephemeral
    in-process client. Chroma's "l2" space reports squared distances; they
    are converted back to Euclidean distances here.
    """

    def __init__(self, collection_name: str, chroma_url: Optional[str] = None,
                 client: Optional[Any] = None) -> None:
        import chromadb

        if client is None:
            if chroma_url:
                parsed = urlparse(chroma_url)
                client = chromadb.HttpClient(
                    host=parsed.hostname or "localhost",
                    port=parsed.port or 8000,
                    ssl=parsed.scheme == "https",
                )
            else:
                client = chromadb.EphemeralClient()

        self.collection = client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "l2"},
        )
        logger.info(f"Chroma collection '{collection_name}' checked/created")

    def upsert(self, ids, vectors, metadatas) -> None:
        _check_batch(ids, vectors, metadatas)
        if not ids:
            return
        self.collection.upsert(
            ids=list(ids),
            embeddings=[[float(x) for x in v] for v in vectors],
            metadatas=[dict(m) for m in metadatas],
        )

    def query(self, vector, k: int) -> list[QueryHit]:
        total = self.count()
        if total == 0 or k < 1:
            return []

        results = self.collection.query(
            query_embeddings=[[float(x) for x in vector]],
            n_results=min(k, total),
            include=["metadatas", "distances"],
        )

        hits = []
        for i in range(len(results["ids"][0])):
            squared = max(0.0, float(results["distances"][0][i]))
            hits.append(QueryHit(
                id=results["ids"][0][i],
                metadata=dict(results["metadatas"][0][i] or {}),
                distance=math.sqrt(squared),
            ))
        hits.sort(key=lambda h: h.distance)
        return hits

    def count(self) -> int:
        return self.collection.count()


def create_vector_index(config) -> VectorIndex:
    """Build the index selected by configuration."""
    if config.vector_store == "chroma":
        return ChromaVectorIndex(config.collection_name, config.chroma_url)
    return InMemoryVectorIndex()
