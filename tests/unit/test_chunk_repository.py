"""Unit tests for ChunkRepository -- owner invariants, updates, similarity queries."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from docrag.interfaces.chunk_store_provider import IChunkStoreProvider
from docrag.models.rag import Chunk, ChunkMetadata, OwnerKind
from docrag.providers.chunk_store.memory_chunk_store import InMemoryChunkStore
from docrag.services.chunk_repository import ChunkRepository
from docrag.services.ingestion.embedding_batcher import EmbeddingBatcher
from docrag.utils.errors import ChunkValidationError, DatastoreError, EmbeddingError
from tests.conftest import EMBEDDING_DIM, FAIL_MARKER, hash_to_vector

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_chunk(
    owner_id: str = "doc-1",
    index: int = 0,
    text: str | None = None,
    kind: OwnerKind = OwnerKind.DOCUMENT,
    embedded: bool = True,
    model: str = "mock-embedding-v1",
    source_type: str = "report",
) -> Chunk:
    body = text if text is not None else f"chunk {index} of {owner_id}"
    return Chunk(
        owner_id=owner_id,
        owner_kind=kind,
        actor_id="user-1",
        text=body,
        chunk_index=index,
        metadata=ChunkMetadata(
            chunk_length=len(body),
            chunk_index=index,
            source_type=source_type,
            embedding_pending=not embedded,
        ),
        embedding=hash_to_vector(body) if embedded else None,
        embedding_model=model if embedded else None,
    )


# ---------------------------------------------------------------------------
# Insert invariants
# ---------------------------------------------------------------------------


class TestInsert:
    @pytest.mark.asyncio
    async def test_assigns_ids(self, repository: ChunkRepository) -> None:
        stored = await repository.insert([_make_chunk(index=0), _make_chunk(index=1)])
        assert all(c.chunk_id for c in stored)
        assert len({c.chunk_id for c in stored}) == 2

    @pytest.mark.asyncio
    async def test_empty_insert(self, repository: ChunkRepository) -> None:
        assert await repository.insert([]) == []

    @pytest.mark.asyncio
    async def test_duplicate_index_in_batch(self, repository: ChunkRepository) -> None:
        with pytest.raises(ChunkValidationError, match="Duplicate"):
            await repository.insert([_make_chunk(index=0), _make_chunk(index=0)])

    @pytest.mark.asyncio
    async def test_duplicate_index_against_stored(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk(index=0)])
        with pytest.raises(ChunkValidationError):
            await repository.insert([_make_chunk(index=0, text="other")])

    @pytest.mark.asyncio
    async def test_gap_in_indices(self, repository: ChunkRepository) -> None:
        with pytest.raises(ChunkValidationError, match="contiguous"):
            await repository.insert([_make_chunk(index=0), _make_chunk(index=2)])

    @pytest.mark.asyncio
    async def test_append_continues_sequence(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk(index=0), _make_chunk(index=1)])
        await repository.insert([_make_chunk(index=2)])
        listed = await repository.list_by_owner("doc-1")
        assert [c.chunk_index for c in listed] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_mixed_owner_kinds(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk(index=0)])
        with pytest.raises(ChunkValidationError, match="mix"):
            await repository.insert([_make_chunk(index=1, kind=OwnerKind.KNOWLEDGE_BOT)])

    @pytest.mark.asyncio
    async def test_wrong_embedding_dimension(self, repository: ChunkRepository) -> None:
        chunk = _make_chunk().model_copy(update={"embedding": [0.1] * (EMBEDDING_DIM + 1)})
        with pytest.raises(ChunkValidationError, match="dim"):
            await repository.insert([chunk])

    @pytest.mark.asyncio
    async def test_nothing_written_on_violation(
        self, repository: ChunkRepository, memory_store: InMemoryChunkStore
    ) -> None:
        with pytest.raises(ChunkValidationError):
            await repository.insert([_make_chunk(index=0), _make_chunk(index=3)])
        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_owners_validated_independently(self, repository: ChunkRepository) -> None:
        stored = await repository.insert(
            [_make_chunk("a", 0), _make_chunk("b", 0), _make_chunk("a", 1)]
        )
        assert len(stored) == 3


# ---------------------------------------------------------------------------
# Delete / stats
# ---------------------------------------------------------------------------


class TestDeleteAndStats:
    @pytest.mark.asyncio
    async def test_delete_is_owner_scoped_and_idempotent(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk("a", 0), _make_chunk("a", 1), _make_chunk("b", 0)])

        assert await repository.delete_by_owner("a") == 2
        assert await repository.delete_by_owner("a") == 0
        assert len(await repository.list_by_owner("b")) == 1

    @pytest.mark.asyncio
    async def test_remove_chunks_renumbers_survivors(self, repository: ChunkRepository) -> None:
        stored = await repository.insert([_make_chunk("a", i) for i in range(5)])

        removed = await repository.remove_chunks("a", [stored[1].chunk_id, stored[3].chunk_id])

        assert removed == 2
        remaining = await repository.list_by_owner("a")
        assert [c.chunk_index for c in remaining] == [0, 1, 2]
        assert [c.text for c in remaining] == ["chunk 0 of a", "chunk 2 of a", "chunk 4 of a"]
        await repository.insert([_make_chunk("a", 3)])

    @pytest.mark.asyncio
    async def test_remove_chunks_rejects_other_owners_ids(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk("a", 0)])
        other = await repository.insert([_make_chunk("b", 0)])

        with pytest.raises(ChunkValidationError):
            await repository.remove_chunks("a", [other[0].chunk_id])
        assert len(await repository.list_by_owner("b")) == 1
        assert await repository.remove_chunks("a", []) == 0

    @pytest.mark.asyncio
    async def test_keyword_query_is_owner_scoped(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk("a", 0, text="alpha beta")])
        await repository.insert([_make_chunk("b", 0, text="alpha beta")])

        results = await repository.keyword_query("a", "alpha gamma", k=5)

        assert [r.chunk.owner_id for r in results] == ["a"]
        assert results[0].similarity == 0.5
        assert await repository.keyword_query("a", "   ", k=5) == []

    @pytest.mark.asyncio
    async def test_stats(self, repository: ChunkRepository) -> None:
        await repository.insert(
            [
                _make_chunk(index=0, text="abcde"),
                _make_chunk(index=1, text="fgh", embedded=False),
                _make_chunk(index=2, text="ij", source_type=""),
            ]
        )
        stats = await repository.get_stats("doc-1")
        assert stats.chunk_count == 3
        assert stats.embedded_count == 2
        assert stats.pending_count == 1
        assert stats.total_content_length == 10
        assert stats.source_types == {"report": 2, "unknown": 1}

    @pytest.mark.asyncio
    async def test_pending_chunk_ids(self, repository: ChunkRepository) -> None:
        stored = await repository.insert(
            [_make_chunk(index=0), _make_chunk(index=1, embedded=False)]
        )
        assert await repository.pending_chunk_ids("doc-1") == [stored[1].chunk_id]


# ---------------------------------------------------------------------------
# Embedding updates
# ---------------------------------------------------------------------------


class TestUpdateEmbeddings:
    @pytest.mark.asyncio
    async def test_fills_pending_embeddings(
        self, repository: ChunkRepository, memory_store: InMemoryChunkStore
    ) -> None:
        stored = await repository.insert(
            [_make_chunk(index=0, embedded=False), _make_chunk(index=1, embedded=False)]
        )
        ids = [c.chunk_id for c in stored]

        assert await repository.update_embeddings(ids + ids[:1]) == 2

        refreshed = await memory_store.get_chunks(ids)
        for original, chunk in zip(stored, refreshed):
            assert chunk.embedding == hash_to_vector(chunk.text)
            assert chunk.embedding_model == "mock-embedding-v1"
            assert chunk.metadata.embedding_pending is False
            assert chunk.updated_at >= original.updated_at

    @pytest.mark.asyncio
    async def test_no_ids_found(self, repository: ChunkRepository) -> None:
        with pytest.raises(ChunkValidationError, match="No chunks"):
            await repository.update_embeddings(["missing-1", "missing-2"])

    @pytest.mark.asyncio
    async def test_some_ids_missing(self, repository: ChunkRepository) -> None:
        stored = await repository.insert([_make_chunk(index=0, embedded=False)])
        with pytest.raises(ChunkValidationError) as exc_info:
            await repository.update_embeddings([stored[0].chunk_id, "missing"])
        assert exc_info.value.affected_count == 1

    @pytest.mark.asyncio
    async def test_provider_failure_writes_nothing(
        self, repository: ChunkRepository, memory_store: InMemoryChunkStore
    ) -> None:
        stored = await repository.insert([_make_chunk(index=0, text=FAIL_MARKER, embedded=False)])
        with pytest.raises(EmbeddingError):
            await repository.update_embeddings([stored[0].chunk_id])
        unchanged = await memory_store.get_chunks([stored[0].chunk_id])
        assert unchanged[0].embedding is None

    @pytest.mark.asyncio
    async def test_short_write_raises_datastore_error(self, batcher: EmbeddingBatcher) -> None:
        store = MagicMock(spec=IChunkStoreProvider)
        store.get_chunks = AsyncMock(
            return_value=[
                _make_chunk(index=0).model_copy(update={"chunk_id": "c0"}),
                _make_chunk(index=1).model_copy(update={"chunk_id": "c1"}),
            ]
        )
        store.update_chunks = AsyncMock(return_value=1)
        store.get_provider_name.return_value = "mock-store"

        with pytest.raises(DatastoreError, match="Failed to update 1 chunks"):
            await ChunkRepository(store, batcher).update_embeddings(["c0", "c1"])


class TestUpdateContent:
    @pytest.mark.asyncio
    async def test_replaces_text_and_embedding(self, repository: ChunkRepository) -> None:
        stored = await repository.insert([_make_chunk(index=0), _make_chunk(index=1)])
        target = stored[1]

        edited = await repository.update_content(target.chunk_id, "  brand   new\r\ntext ")

        assert edited.chunk_id == target.chunk_id
        assert edited.chunk_index == 1
        assert edited.text == "brand new\ntext"
        assert edited.embedding == hash_to_vector("brand new\ntext")
        assert edited.metadata.chunk_length == len("brand new\ntext")
        untouched = (await repository.list_by_owner("doc-1"))[0]
        assert untouched.text == stored[0].text

    @pytest.mark.asyncio
    async def test_unknown_chunk(self, repository: ChunkRepository) -> None:
        with pytest.raises(ChunkValidationError, match="not found"):
            await repository.update_content("nope", "text")

    @pytest.mark.asyncio
    async def test_blank_content(self, repository: ChunkRepository) -> None:
        stored = await repository.insert([_make_chunk(index=0)])
        with pytest.raises(ChunkValidationError, match="empty"):
            await repository.update_content(stored[0].chunk_id, " \n ")


# ---------------------------------------------------------------------------
# Similarity queries
# ---------------------------------------------------------------------------


class TestSimilarityQuery:
    @pytest.mark.asyncio
    async def test_exact_text_ranks_first(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk(index=i) for i in range(4)])
        query = hash_to_vector("chunk 2 of doc-1")

        results = await repository.similarity_query("doc-1", query, k=4, min_similarity=0.0)

        assert results[0].chunk.chunk_index == 2
        assert results[0].similarity == pytest.approx(1.0)
        scores = [r.similarity for r in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_owner_isolation(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk("a", 0, text="shared"), _make_chunk("b", 0, text="shared")])
        results = await repository.similarity_query(
            "a", hash_to_vector("shared"), k=10, min_similarity=0.0
        )
        assert [r.chunk.owner_id for r in results] == ["a"]

    @pytest.mark.asyncio
    async def test_threshold_and_limit(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk(index=i) for i in range(5)])
        query = hash_to_vector("chunk 0 of doc-1")

        strict = await repository.similarity_query("doc-1", query, k=5, min_similarity=0.999)
        assert [r.chunk.chunk_index for r in strict] == [0]

        limited = await repository.similarity_query("doc-1", query, k=2, min_similarity=0.0)
        assert len(limited) <= 2

    @pytest.mark.asyncio
    async def test_ties_ordered_by_index(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk(index=i, text="same words") for i in range(3)])
        results = await repository.similarity_query(
            "doc-1", hash_to_vector("same words"), k=3, min_similarity=0.5
        )
        assert [r.chunk.chunk_index for r in results] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_pending_chunks_never_returned(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk(index=0, text="x", embedded=False)])
        assert await repository.similarity_query("doc-1", hash_to_vector("x"), 5, 0.0) == []

    @pytest.mark.asyncio
    async def test_non_positive_k(self, repository: ChunkRepository) -> None:
        await repository.insert([_make_chunk(index=0)])
        assert await repository.similarity_query("doc-1", hash_to_vector("x"), 0, 0.0) == []

    @pytest.mark.asyncio
    async def test_query_dimension_mismatch(self, repository: ChunkRepository) -> None:
        with pytest.raises(ChunkValidationError, match="dimensions"):
            await repository.similarity_query("doc-1", [0.1, 0.2], k=3, min_similarity=0.0)


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_foreign_errors_wrapped(self, batcher: EmbeddingBatcher) -> None:
        store = MagicMock(spec=IChunkStoreProvider)
        store.delete_by_owner = AsyncMock(side_effect=RuntimeError("disk full"))
        store.get_provider_name.return_value = "mock-store"

        with pytest.raises(DatastoreError) as exc_info:
            await ChunkRepository(store, batcher).delete_by_owner("doc-1")

        assert exc_info.value.operation == "delete_by_owner"
        assert "disk full" in exc_info.value.message
