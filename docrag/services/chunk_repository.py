"""Chunk persistence with ordering and ownership invariants.

:class:`ChunkRepository` sits between the ingestion/retrieval services and
the opaque :class:`~docrag.interfaces.chunk_store_provider.IChunkStoreProvider`.
The store only persists and searches; this layer guarantees:

* ``chunk_index`` values of an owner are exactly ``0..n-1``, unique.
* An owner's chunks all share one :class:`~docrag.models.rag.OwnerKind`.
* Every stored vector has the embedding provider's dimensionality.
* Similarity queries never cross owners or embedding models.

Store failures surface as :class:`DatastoreError` carrying the operation
name and affected count.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import TYPE_CHECKING

import structlog

from docrag.interfaces.chunk_store_provider import IChunkStoreProvider
from docrag.models.rag import Chunk, OwnerStats, RetrievedChunk, utc_now
from docrag.utils.errors import ChunkValidationError, DatastoreError, DocRagError
from docrag.utils.text_normalizer import normalize_text

if TYPE_CHECKING:
    from docrag.services.ingestion.embedding_batcher import EmbeddingBatcher

logger = structlog.get_logger(logger_name=__name__)

_WORD = re.compile(r"\w+")


class ChunkRepository:
    """Owner-scoped chunk persistence over an :class:`IChunkStoreProvider`.

    Parameters
    ----------
    store:
        Backend that persists chunks and answers similarity searches.
    batcher:
        Embedding path used to regenerate vectors on backfill and content
        edits.  Its dimension and model name also validate inserted vectors.
    """

    def __init__(self, store: IChunkStoreProvider, batcher: EmbeddingBatcher) -> None:
        self._store = store
        self._batcher = batcher

    @property
    def store(self) -> IChunkStoreProvider:
        return self._store

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, chunks: list[Chunk]) -> list[Chunk]:
        """Validate and persist *chunks*, returning them with assigned ids.

        Raises
        ------
        ChunkValidationError
            On a duplicate ``(owner_id, chunk_index)``, a gap in an owner's
            indices, mixed owner kinds, or a wrong-sized embedding.
        DatastoreError
            If the store rejects the write.
        """
        if not chunks:
            return []

        by_owner: dict[str, list[Chunk]] = {}
        for chunk in chunks:
            by_owner.setdefault(chunk.owner_id, []).append(chunk)

        dimension = self._batcher.dimension
        for chunk in chunks:
            if chunk.embedding is not None and len(chunk.embedding) != dimension:
                raise ChunkValidationError(
                    message=(
                        f"Chunk {chunk.chunk_index} of {chunk.owner_id!r} has a "
                        f"{len(chunk.embedding)}-dim embedding, expected {dimension}"
                    ),
                    affected_count=len(chunks),
                )

        for owner_id, new_chunks in by_owner.items():
            existing = await self._call("list_chunks", self._store.list_chunks(owner_id))
            self._check_owner_invariants(owner_id, existing, new_chunks)

        stored = await self._call("insert", self._store.insert(chunks), affected=len(chunks))
        logger.info(
            "chunks_inserted",
            owners=sorted(by_owner),
            count=len(stored),
            pending=sum(1 for c in stored if c.embedding is None),
        )
        return stored

    async def delete_by_owner(self, owner_id: str) -> int:
        """Delete every chunk of *owner_id*.  Idempotent; returns the count removed."""
        deleted = await self._call("delete_by_owner", self._store.delete_by_owner(owner_id))
        logger.info("chunks_deleted", owner_id=owner_id, deleted_count=deleted)
        return deleted

    async def update_embeddings(self, chunk_ids: list[str]) -> int:
        """Regenerate embeddings for *chunk_ids* from their stored text.

        All chunks are embedded as one unit; on success every chunk gets a
        fresh vector, ``embedding_pending`` cleared and ``updated_at`` set.

        Returns
        -------
        int
            Number of chunks updated.

        Raises
        ------
        ChunkValidationError
            If no chunk or only some of the chunks exist.
        EmbeddingError
            If the provider fails; nothing is written.
        DatastoreError
            If the write fails.
        """
        unique_ids = list(dict.fromkeys(chunk_ids))
        if not unique_ids:
            return 0

        chunks = await self._call("get_chunks", self._store.get_chunks(unique_ids))
        if not chunks:
            raise ChunkValidationError(
                message="No chunks found for the requested ids",
                affected_count=len(unique_ids),
            )
        if len(chunks) != len(unique_ids):
            found = {c.chunk_id for c in chunks}
            missing = [cid for cid in unique_ids if cid not in found]
            raise ChunkValidationError(
                message=f"{len(missing)} chunk ids not found: {missing[:5]}",
                affected_count=len(missing),
            )

        vectors = await self._batcher.embed_batch([c.text for c in chunks])
        now = utc_now()
        refreshed = [
            chunk.model_copy(
                update={
                    "embedding": vector,
                    "embedding_model": self._batcher.model_name,
                    "updated_at": now,
                    "metadata": chunk.metadata.model_copy(update={"embedding_pending": False}),
                }
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        written = await self._call(
            "update_embeddings", self._store.update_chunks(refreshed), affected=len(refreshed)
        )
        if written != len(refreshed):
            raise DatastoreError(
                message=f"Failed to update {len(refreshed) - written} chunks",
                provider_name=self._store.get_provider_name(),
                operation="update_embeddings",
                affected_count=len(refreshed) - written,
            )
        logger.info("chunk_embeddings_updated", count=written)
        return written

    async def update_content(self, chunk_id: str, text: str) -> Chunk:
        """Replace one chunk's text and regenerate exactly its embedding.

        The text is normalized first.  The chunk keeps its id, owner and
        index; ``chunk_length`` and ``updated_at`` are refreshed.

        Raises
        ------
        ChunkValidationError
            If the chunk does not exist or the new text is blank.
        """
        found = await self._call("get_chunks", self._store.get_chunks([chunk_id]))
        if not found:
            raise ChunkValidationError(message=f"Chunk {chunk_id!r} not found", affected_count=1)
        content = normalize_text(text)
        if not content:
            raise ChunkValidationError(message="Chunk content cannot be empty", affected_count=1)

        chunk = found[0]
        vectors = await self._batcher.embed_batch([content])
        edited = chunk.model_copy(
            update={
                "text": content,
                "embedding": vectors[0],
                "embedding_model": self._batcher.model_name,
                "updated_at": utc_now(),
                "metadata": chunk.metadata.model_copy(
                    update={"chunk_length": len(content), "embedding_pending": False}
                ),
            }
        )
        written = await self._call("update_content", self._store.update_chunks([edited]), affected=1)
        if written != 1:
            raise DatastoreError(
                message=f"Chunk {chunk_id!r} disappeared during update",
                provider_name=self._store.get_provider_name(),
                operation="update_content",
                affected_count=1,
            )
        logger.info("chunk_content_updated", chunk_id=chunk_id, owner_id=chunk.owner_id)
        return edited

    async def remove_chunks(self, owner_id: str, chunk_ids: list[str]) -> int:
        """Delete some of *owner_id*'s chunks and close the gap in its indices.

        The surviving chunks keep their relative order and are renumbered
        ``0..n-1``.  Ids belonging to another owner are rejected.

        Returns
        -------
        int
            Number of chunks removed.
        """
        existing = await self.list_by_owner(owner_id)
        owned = {c.chunk_id for c in existing}
        foreign = [cid for cid in chunk_ids if cid not in owned]
        if foreign:
            raise ChunkValidationError(
                message=f"{len(foreign)} chunk ids do not belong to {owner_id!r}: {foreign[:5]}",
                affected_count=len(foreign),
            )
        doomed = set(chunk_ids)
        if not doomed:
            return 0

        removed = await self._call(
            "delete_chunks", self._store.delete_chunks(list(doomed)), affected=len(doomed)
        )
        now = utc_now()
        renumbered = [
            chunk.model_copy(update={"chunk_index": position, "updated_at": now})
            for position, chunk in enumerate(c for c in existing if c.chunk_id not in doomed)
            if chunk.chunk_index != position
        ]
        if renumbered:
            await self._call(
                "reindex", self._store.update_chunks(renumbered), affected=len(renumbered)
            )
        logger.info(
            "chunks_removed",
            owner_id=owner_id,
            removed_count=removed,
            reindexed_count=len(renumbered),
        )
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def similarity_query(
        self,
        owner_id: str,
        query_embedding: list[float],
        k: int,
        min_similarity: float,
        embedding_model: str | None = None,
    ) -> list[RetrievedChunk]:
        """Return up to *k* of *owner_id*'s chunks scoring at least *min_similarity*.

        Ordered by descending similarity, ties by ascending ``chunk_index``.
        An empty list means nothing cleared the threshold.
        """
        if k <= 0:
            return []
        if len(query_embedding) != self._batcher.dimension:
            raise ChunkValidationError(
                message=(
                    f"Query embedding has {len(query_embedding)} dimensions, "
                    f"expected {self._batcher.dimension}"
                )
            )
        results = await self._call(
            "similarity_query",
            self._store.similarity_search(
                owner_id, query_embedding, k, min_similarity, embedding_model
            ),
        )
        # Owner, threshold and limit hold for every backend.
        results = [
            r
            for r in results
            if r.chunk.owner_id == owner_id and r.similarity >= min_similarity
        ]
        results.sort(key=lambda r: (-r.similarity, r.chunk.chunk_index))
        return results[:k]

    async def keyword_query(self, owner_id: str, query_text: str, k: int) -> list[RetrievedChunk]:
        """Score *owner_id*'s chunks by the share of query terms they contain.

        Terms are lower-cased word tokens; a chunk containing every distinct
        query term scores ``1.0``.  Chunks matching no term are dropped.
        Pending chunks are included since no vector is needed.
        """
        terms = set(_WORD.findall(query_text.lower()))
        if k <= 0 or not terms:
            return []
        scored = []
        for chunk in await self.list_by_owner(owner_id):
            hits = len(terms & set(_WORD.findall(chunk.text.lower())))
            if hits:
                scored.append(RetrievedChunk(chunk=chunk, similarity=hits / len(terms)))
        scored.sort(key=lambda r: (-r.similarity, r.chunk.chunk_index))
        return scored[:k]

    async def get_chunk(self, chunk_id: str) -> Chunk | None:
        found = await self._call("get_chunks", self._store.get_chunks([chunk_id]))
        return found[0] if found else None

    async def list_by_owner(self, owner_id: str) -> list[Chunk]:
        return await self._call("list_chunks", self._store.list_chunks(owner_id))

    async def count_embedded(self, owner_id: str, embedding_model: str | None = None) -> int:
        return await self._call(
            "count_embedded", self._store.count_embedded(owner_id, embedding_model)
        )

    async def pending_chunk_ids(self, owner_id: str) -> list[str]:
        """Ids of *owner_id*'s chunks that have no embedding yet."""
        chunks = await self.list_by_owner(owner_id)
        return [c.chunk_id for c in chunks if c.embedding is None]

    async def get_stats(self, owner_id: str) -> OwnerStats:
        chunks = await self.list_by_owner(owner_id)
        embedded = sum(1 for c in chunks if c.embedding is not None)
        source_types = Counter(c.metadata.source_type or "unknown" for c in chunks)
        return OwnerStats(
            owner_id=owner_id,
            chunk_count=len(chunks),
            embedded_count=embedded,
            pending_count=len(chunks) - embedded,
            total_content_length=sum(len(c.text) for c in chunks),
            source_types=dict(source_types),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _check_owner_invariants(owner_id: str, existing: list[Chunk], new_chunks: list[Chunk]) -> None:
        kinds = {c.owner_kind for c in existing} | {c.owner_kind for c in new_chunks}
        if len(kinds) > 1:
            raise ChunkValidationError(
                message=f"Owner {owner_id!r} cannot mix owner kinds {sorted(k.value for k in kinds)}",
                affected_count=len(new_chunks),
            )

        taken = {c.chunk_index for c in existing}
        seen: set[int] = set()
        for chunk in new_chunks:
            if chunk.chunk_index in taken or chunk.chunk_index in seen:
                raise ChunkValidationError(
                    message=f"Duplicate chunk index {chunk.chunk_index} for owner {owner_id!r}",
                    affected_count=len(new_chunks),
                )
            seen.add(chunk.chunk_index)

        indices = taken | seen
        if indices != set(range(len(indices))):
            raise ChunkValidationError(
                message=(
                    f"Chunk indices for owner {owner_id!r} must be contiguous from 0; "
                    f"got {len(indices)} indices up to {max(indices)}"
                ),
                affected_count=len(new_chunks),
            )

    async def _call(self, operation: str, awaitable, affected: int = 0):  # noqa: ANN001, ANN202
        """Await a store call, wrapping foreign failures in :class:`DatastoreError`."""
        try:
            return await awaitable
        except DocRagError:
            raise
        except Exception as exc:
            logger.error("chunk_store_failed", operation=operation, error=str(exc))
            raise DatastoreError(
                message=f"{operation} failed: {exc}",
                provider_name=self._store.get_provider_name(),
                operation=operation,
                affected_count=affected,
            ) from exc
