"""In-process chunk store with exact cosine similarity.

Keeps chunks in a dict keyed by ``chunk_id`` and scores queries with numpy.
Used as the default ``memory`` backend and by the test suite; data does not
survive a restart.
"""

from __future__ import annotations

import uuid

import numpy as np
import structlog

from docrag.interfaces.chunk_store_provider import IChunkStoreProvider
from docrag.models.rag import Chunk, RetrievedChunk
from docrag.utils.errors import DatastoreError

logger = structlog.get_logger(logger_name=__name__)


class InMemoryChunkStore(IChunkStoreProvider):
    """Dict-backed :class:`IChunkStoreProvider`.

    Similarity search is exhaustive, so results are exact.
    """

    def __init__(self) -> None:
        self._chunks: dict[str, Chunk] = {}

    # ------------------------------------------------------------------
    # IChunkStoreProvider implementation
    # ------------------------------------------------------------------

    async def insert(self, chunks: list[Chunk]) -> list[Chunk]:
        stored: list[Chunk] = []
        for chunk in chunks:
            chunk_id = chunk.chunk_id or str(uuid.uuid4())
            if chunk_id in self._chunks:
                raise DatastoreError(
                    message=f"Chunk id {chunk_id} already exists",
                    provider_name=self.get_provider_name(),
                    operation="insert",
                    affected_count=len(chunks),
                )
            stored.append(chunk.model_copy(update={"chunk_id": chunk_id}))

        for chunk in stored:
            self._chunks[chunk.chunk_id] = chunk

        logger.debug("memory_store_insert", count=len(stored))
        return stored

    async def delete_by_owner(self, owner_id: str) -> int:
        doomed = [cid for cid, c in self._chunks.items() if c.owner_id == owner_id]
        for cid in doomed:
            del self._chunks[cid]
        return len(doomed)

    async def delete_chunks(self, chunk_ids: list[str]) -> int:
        removed = 0
        for cid in dict.fromkeys(chunk_ids):
            if self._chunks.pop(cid, None) is not None:
                removed += 1
        return removed

    async def get_chunks(self, chunk_ids: list[str]) -> list[Chunk]:
        return [self._chunks[cid] for cid in chunk_ids if cid in self._chunks]

    async def list_chunks(self, owner_id: str) -> list[Chunk]:
        owned = [c for c in self._chunks.values() if c.owner_id == owner_id]
        return sorted(owned, key=lambda c: c.chunk_index)

    async def update_chunks(self, chunks: list[Chunk]) -> int:
        written = 0
        for chunk in chunks:
            if chunk.chunk_id in self._chunks:
                self._chunks[chunk.chunk_id] = chunk
                written += 1
        return written

    async def similarity_search(
        self,
        owner_id: str,
        query_embedding: list[float],
        top_k: int,
        min_similarity: float,
        embedding_model: str | None = None,
    ) -> list[RetrievedChunk]:
        candidates = [
            c
            for c in self._chunks.values()
            if c.owner_id == owner_id
            and c.embedding is not None
            and (embedding_model is None or c.embedding_model == embedding_model)
        ]
        if not candidates or top_k <= 0:
            return []

        matrix = np.asarray([c.embedding for c in candidates], dtype=np.float64)
        query = np.asarray(query_embedding, dtype=np.float64)
        if matrix.shape[1] != query.shape[0]:
            raise DatastoreError(
                message=(
                    f"Query has {query.shape[0]} dimensions, stored vectors have "
                    f"{matrix.shape[1]}"
                ),
                provider_name=self.get_provider_name(),
                operation="similarity_search",
            )

        scores = _cosine_similarities(matrix, query)
        scored = [
            (float(score), chunk)
            for score, chunk in zip(scores, candidates)
            if score >= min_similarity
        ]
        scored.sort(key=lambda pair: (-pair[0], pair[1].chunk_index))

        return [
            RetrievedChunk(chunk=chunk, similarity=score)
            for score, chunk in scored[:top_k]
        ]

    async def count_embedded(self, owner_id: str, embedding_model: str | None = None) -> int:
        return sum(
            1
            for c in self._chunks.values()
            if c.owner_id == owner_id
            and c.embedding is not None
            and (embedding_model is None or c.embedding_model == embedding_model)
        )

    def get_provider_name(self) -> str:
        return "memory"

    def is_available(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._chunks)


def _cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row of *matrix* with *query*, clamped to [0, 1].

    Zero vectors score 0.
    """
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return np.clip(sims, 0.0, 1.0)
