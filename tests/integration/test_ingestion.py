"""Integration tests for the ingestion pipeline over the in-memory store.

Runs normalize -> segment -> extract -> embed -> store end to end with the
deterministic mock embedding provider from ``tests.conftest``.
"""

from __future__ import annotations

import asyncio

import pytest

from docrag.models.rag import IngestionOptions, KnowledgeItem, OwnerKind
from docrag.providers.chunk_store.memory_chunk_store import InMemoryChunkStore
from docrag.services.chunk_repository import ChunkRepository
from docrag.services.ingestion.embedding_batcher import EmbeddingBatcher
from docrag.services.ingestion.ingestion_service import IngestionService
from docrag.services.retriever import Retriever
from docrag.utils.errors import ConfigurationError, ErrorKind, NoEmbeddedChunksError
from tests.conftest import FAIL_MARKER, MockEmbeddingProvider


class _UnconfiguredProvider(MockEmbeddingProvider):
    async def embed(self, texts: list[str]) -> list[list[float]]:
        raise ConfigurationError("OPENAI_API_KEY is not set", provider_name="mock-embedding")


class _SlowOnMarkerProvider(MockEmbeddingProvider):
    """Sleeps *delay* seconds before embedding any batch mentioning *marker*."""

    def __init__(self, marker: str, delay: float) -> None:
        super().__init__()
        self._marker = marker
        self._delay = delay

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if any(self._marker in t for t in texts):
            await asyncio.sleep(self._delay)
        return await super().embed(texts)


async def _indices(store: InMemoryChunkStore, owner_id: str) -> list[int]:
    return [c.chunk_index for c in await store.list_chunks(owner_id)]


# ======================================================================
# Documents
# ======================================================================


class TestDocumentIngestion:
    @pytest.mark.asyncio
    async def test_ingest_stores_contiguous_embedded_chunks(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        long_text: str,
    ) -> None:
        result = await ingestion_service.process_document(
            "doc-1", "alice", long_text, source_name="notes.txt", source_type="notes"
        )

        assert result.success is True
        assert result.owner_kind is OwnerKind.DOCUMENT
        assert result.chunk_count > 5
        assert result.embedded_count == result.chunk_count
        assert result.pending_chunk_ids == []

        chunks = await memory_store.list_chunks("doc-1")
        assert [c.chunk_index for c in chunks] == list(range(result.chunk_count))
        assert all(len(c.text) <= 120 for c in chunks)
        assert all(c.actor_id == "alice" for c in chunks)
        assert all(c.embedding_model == "mock-embedding-v1" for c in chunks)
        first = chunks[0].metadata
        assert first.total_chunks == result.chunk_count
        assert first.source_name == "notes.txt"
        assert first.document is not None
        assert first.document.char_count == len(long_text)

    @pytest.mark.asyncio
    async def test_reingest_replaces_prior_chunks(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        long_text: str,
    ) -> None:
        await ingestion_service.process_document("doc-1", "alice", long_text)
        result = await ingestion_service.process_document("doc-1", "bob", "A short replacement.")

        assert result.chunk_count == 1
        chunks = await memory_store.list_chunks("doc-1")
        assert len(chunks) == 1
        assert chunks[0].text == "A short replacement."
        assert chunks[0].chunk_index == 0
        assert chunks[0].actor_id == "bob"

    @pytest.mark.asyncio
    async def test_owners_are_isolated(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        long_text: str,
    ) -> None:
        await ingestion_service.process_document("doc-1", "alice", long_text)
        await ingestion_service.process_document("doc-2", "alice", "Second document.")
        await ingestion_service.process_document("doc-2", "alice", "Second document, edited.")

        assert len(await memory_store.list_chunks("doc-1")) > 5
        assert [c.text for c in await memory_store.list_chunks("doc-2")] == [
            "Second document, edited."
        ]

    @pytest.mark.asyncio
    async def test_empty_reingest_clears_owner(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
    ) -> None:
        await ingestion_service.process_document("doc-1", "alice", "Some content.")
        result = await ingestion_service.process_document("doc-1", "alice", "   \n\n  ")

        assert result.success is True
        assert result.chunk_count == 0
        assert await memory_store.list_chunks("doc-1") == []

    @pytest.mark.asyncio
    async def test_concurrent_reingests_leave_one_consistent_set(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        long_text: str,
    ) -> None:
        await asyncio.gather(
            ingestion_service.process_document("doc-1", "alice", long_text),
            ingestion_service.process_document("doc-1", "bob", "Replacement body."),
            ingestion_service.process_document("doc-1", "carol", long_text.upper()),
        )

        indices = await _indices(memory_store, "doc-1")
        assert indices == list(range(len(indices)))
        assert len({c.actor_id for c in await memory_store.list_chunks("doc-1")}) == 1

    @pytest.mark.asyncio
    async def test_later_submission_survives_slower_earlier_one(self) -> None:
        provider = _SlowOnMarkerProvider("OLD", delay=0.2)
        store = InMemoryChunkStore()
        batcher = EmbeddingBatcher(provider, batch_size=2, max_retries=0, retry_backoff=0.0)
        service = IngestionService(ChunkRepository(store, batcher), batcher)

        first = asyncio.create_task(service.process_document("doc", "alice", "OLD upload body."))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(service.process_document("doc", "bob", "NEW upload body."))
        results = await asyncio.gather(first, second)

        assert all(r.success for r in results)
        chunks = await store.list_chunks("doc")
        assert [c.text for c in chunks] == ["NEW upload body."]
        assert chunks[0].actor_id == "bob"

    @pytest.mark.asyncio
    async def test_option_overrides(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        long_text: str,
    ) -> None:
        options = IngestionOptions(chunk_size=400, chunk_overlap=0, extract_metadata=False)
        result = await ingestion_service.process_document("doc-1", "alice", long_text, options)

        chunks = await memory_store.list_chunks("doc-1")
        assert result.chunk_count == len(chunks)
        assert all(len(c.text) <= 400 for c in chunks)
        assert all(c.metadata.document is None for c in chunks)

    @pytest.mark.asyncio
    async def test_embeddings_disabled_stores_pending(
        self,
        ingestion_service: IngestionService,
        mock_embedding_provider: MockEmbeddingProvider,
        long_text: str,
    ) -> None:
        options = IngestionOptions(chunk_size=120, chunk_overlap=30, generate_embeddings=False)
        result = await ingestion_service.process_document("doc-1", "alice", long_text, options)

        assert result.success is True
        assert result.embedded_count == 0
        assert result.pending_count == result.chunk_count
        assert mock_embedding_provider.calls == []


# ======================================================================
# Partial failure and backfill
# ======================================================================


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_failed_batches_are_stored_pending(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        long_text: str,
    ) -> None:
        text = f"{long_text}\n\nThe closing paragraph mentions {FAIL_MARKER} once."
        result = await ingestion_service.process_document("doc-1", "alice", text)

        assert result.success is False
        assert result.error_kind is ErrorKind.PROVIDER
        assert result.error
        assert result.embedded_count > 0
        assert result.pending_count > 0
        assert result.chunk_count == result.embedded_count + result.pending_count
        assert result.partial_count == result.chunk_count
        assert result.failed_chunk_indices == sorted(result.failed_chunk_indices)

        stored = await memory_store.list_chunks("doc-1")
        assert len(stored) == result.chunk_count
        pending = [c for c in stored if c.embedding is None]
        assert {c.chunk_id for c in pending} == set(result.pending_chunk_ids)
        assert all(c.metadata.embedding_pending for c in pending)
        assert all(c.embedding_model is None for c in pending)

    @pytest.mark.asyncio
    async def test_backfill_embeds_pending_chunks(
        self,
        ingestion_service: IngestionService,
        mock_embedding_provider: MockEmbeddingProvider,
        long_text: str,
    ) -> None:
        text = f"{long_text}\n\nThe closing paragraph mentions {FAIL_MARKER} once."
        first = await ingestion_service.process_document("doc-1", "alice", text)

        still_failing = await ingestion_service.backfill_owner("doc-1")
        assert still_failing.success is False
        assert still_failing.error_kind is ErrorKind.PROVIDER

        mock_embedding_provider.fail_on_marker = False
        result = await ingestion_service.backfill_owner("doc-1")

        assert result.success is True
        assert result.requested_count == first.pending_count
        assert result.updated_count == first.pending_count
        stats = await ingestion_service.get_owner_stats("doc-1")
        assert stats.pending_count == 0
        assert stats.embedded_count == stats.chunk_count

    @pytest.mark.asyncio
    async def test_backfill_without_pending_is_noop(
        self,
        ingestion_service: IngestionService,
    ) -> None:
        await ingestion_service.process_document("doc-1", "alice", "Fully embedded.")
        result = await ingestion_service.backfill_owner("doc-1")
        assert result.success is True
        assert result.requested_count == 0

    @pytest.mark.asyncio
    async def test_configuration_error_leaves_store_untouched(self) -> None:
        provider = _UnconfiguredProvider()
        store = InMemoryChunkStore()
        batcher = EmbeddingBatcher(provider, batch_size=2, max_retries=2, retry_backoff=0.0)
        service = IngestionService(ChunkRepository(store, batcher), batcher)

        seed = IngestionService(
            ChunkRepository(store, EmbeddingBatcher(MockEmbeddingProvider())),
            EmbeddingBatcher(MockEmbeddingProvider()),
        )
        await seed.process_document("doc-1", "alice", "Original content stays.")

        result = await service.process_document("doc-1", "alice", "Replacement content.")

        assert result.success is False
        assert result.error_kind is ErrorKind.CONFIGURATION
        assert result.chunk_count == 0
        assert [c.text for c in await store.list_chunks("doc-1")] == ["Original content stays."]


# ======================================================================
# Knowledge bots
# ======================================================================


class TestKnowledgeItems:
    @pytest.mark.asyncio
    async def test_items_append_with_continuing_indices(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        long_text: str,
    ) -> None:
        first = await ingestion_service.process_knowledge_item(
            "bot-1", "alice", "Overview", long_text
        )
        second = await ingestion_service.process_knowledge_item(
            "bot-1", "alice", "Refunds", "Refunds are issued within 14 days."
        )

        assert first.owner_kind is OwnerKind.KNOWLEDGE_BOT
        assert second.chunk_count == 1
        indices = await _indices(memory_store, "bot-1")
        assert indices == list(range(first.chunk_count + 1))

        chunks = await memory_store.list_chunks("bot-1")
        assert chunks[-1].metadata.title == "Refunds"
        assert chunks[-1].metadata.source_type == "knowledge"
        assert chunks[1].text.startswith("...")
        assert not chunks[0].text.startswith("...")

    @pytest.mark.asyncio
    async def test_document_owner_cannot_take_knowledge_items(
        self,
        ingestion_service: IngestionService,
    ) -> None:
        await ingestion_service.process_document("shared", "alice", "Document text.")
        result = await ingestion_service.process_knowledge_item(
            "shared", "alice", "Item", "Knowledge text."
        )

        assert result.success is False
        assert result.error_kind is ErrorKind.VALIDATION


    @pytest.mark.asyncio
    async def test_batch_counts_each_item(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
    ) -> None:
        items = [
            KnowledgeItem(title="Shipping", text="Orders ship in two days."),
            KnowledgeItem(title="Broken", text=f"Contains {FAIL_MARKER} text."),
            KnowledgeItem(title="Refunds", text="Refunds are issued within 14 days."),
        ]
        result = await ingestion_service.process_knowledge_items("bot-1", "alice", items)

        assert result.success is False
        assert result.processed_count == 2
        assert result.failed_count == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Broken: ")
        assert len(result.results) == 3
        assert await _indices(memory_store, "bot-1") == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_batch_stops_after_configuration_error(self) -> None:
        batcher = EmbeddingBatcher(_UnconfiguredProvider(), max_retries=0, retry_backoff=0.0)
        service = IngestionService(ChunkRepository(InMemoryChunkStore(), batcher), batcher)
        items = [KnowledgeItem(title=f"Item {n}", text="Some text.") for n in range(3)]

        result = await service.process_knowledge_items("bot-1", "alice", items)

        assert result.processed_count == 0
        assert result.failed_count == 3
        assert len(result.results) == 1
        assert result.errors[1] == "Item 1: skipped after configuration error"

    @pytest.mark.asyncio
    async def test_delete_item_renumbers_remaining_chunks(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        long_text: str,
    ) -> None:
        await ingestion_service.process_knowledge_item("bot-1", "alice", "Overview", long_text)
        await ingestion_service.process_knowledge_item("bot-1", "alice", "Refunds", "Refund text.")
        await ingestion_service.process_knowledge_item("bot-1", "alice", "Shipping", "Ship text.")

        result = await ingestion_service.delete_knowledge_item("bot-1", "Overview")

        assert result.success is True
        assert result.deleted_count > 1
        chunks = await memory_store.list_chunks("bot-1")
        assert [c.chunk_index for c in chunks] == [0, 1]
        assert [c.metadata.title for c in chunks] == ["Refunds", "Shipping"]

        again = await ingestion_service.delete_knowledge_item("bot-1", "Overview")
        assert again.success is True
        assert again.deleted_count == 0

    @pytest.mark.asyncio
    async def test_update_item_replaces_its_chunks(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
    ) -> None:
        for title in ("Shipping", "Refunds", "Warranty"):
            await ingestion_service.process_knowledge_item("bot-1", "alice", title, f"{title} v1.")

        result = await ingestion_service.update_knowledge_item(
            "bot-1", "bob", "Refunds", "Refunds v2 take five days."
        )

        assert result.success is True
        chunks = await memory_store.list_chunks("bot-1")
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert [c.text for c in chunks] == [
            "Shipping v1.",
            "Warranty v1.",
            "Refunds v2 take five days.",
        ]
        assert chunks[-1].actor_id == "bob"
        assert chunks[-1].embedding is not None

    @pytest.mark.asyncio
    async def test_update_missing_item_is_validation_failure(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
    ) -> None:
        await ingestion_service.process_knowledge_item("bot-1", "alice", "Shipping", "Ship text.")

        result = await ingestion_service.update_knowledge_item("bot-1", "alice", "Nope", "Text.")

        assert result.success is False
        assert result.error_kind is ErrorKind.VALIDATION
        assert [c.text for c in await memory_store.list_chunks("bot-1")] == ["Ship text."]

    @pytest.mark.asyncio
    async def test_item_delete_rejects_document_owner(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
    ) -> None:
        await ingestion_service.process_document("doc-1", "alice", "Document text.")

        result = await ingestion_service.delete_knowledge_item("doc-1", "")

        assert result.success is False
        assert result.error_kind is ErrorKind.VALIDATION
        assert len(await memory_store.list_chunks("doc-1")) == 1

# ======================================================================
# Maintenance and retrieval
# ======================================================================


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_delete_owner_is_idempotent(
        self,
        ingestion_service: IngestionService,
        long_text: str,
    ) -> None:
        ingested = await ingestion_service.process_document("doc-1", "alice", long_text)

        first = await ingestion_service.delete_owner("doc-1")
        second = await ingestion_service.delete_owner("doc-1")

        assert first.deleted_count == ingested.chunk_count
        assert second.success is True
        assert second.deleted_count == 0

    @pytest.mark.asyncio
    async def test_update_chunk_content_reembeds_one_chunk(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        retriever: Retriever,
        long_text: str,
    ) -> None:
        await ingestion_service.process_document("doc-1", "alice", long_text)
        target = (await memory_store.list_chunks("doc-1"))[2]

        result = await ingestion_service.update_chunk_content(
            target.chunk_id, "  Completely   new wording for this chunk. "
        )

        assert result.success is True
        edited = (await memory_store.get_chunks([target.chunk_id]))[0]
        assert edited.text == "Completely new wording for this chunk."
        assert edited.chunk_index == 2
        assert edited.metadata.chunk_length == len(edited.text)

        hits = await retriever.retrieve("doc-1", "Completely new wording for this chunk.", k=1)
        assert hits[0].chunk.chunk_id == target.chunk_id
        assert hits[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_update_unknown_chunk_is_validation_failure(
        self,
        ingestion_service: IngestionService,
    ) -> None:
        result = await ingestion_service.update_chunk_content("missing", "text")
        assert result.success is False
        assert result.error_kind is ErrorKind.VALIDATION

        result = await ingestion_service.update_embeddings(["missing"])
        assert result.success is False
        assert result.error_kind is ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_retrieval_after_ingest(
        self,
        ingestion_service: IngestionService,
        memory_store: InMemoryChunkStore,
        retriever: Retriever,
        long_text: str,
    ) -> None:
        with pytest.raises(NoEmbeddedChunksError):
            await retriever.retrieve("doc-1", "anything")

        await ingestion_service.process_document("doc-1", "alice", long_text)
        sample = (await memory_store.list_chunks("doc-1"))[3]

        hits = await retriever.retrieve("doc-1", sample.text, k=3)
        assert hits[0].chunk.chunk_id == sample.chunk_id
        assert len(hits) <= 3
        assert [h.similarity for h in hits] == sorted((h.similarity for h in hits), reverse=True)
