"""Orchestrator for the ingestion pipeline.

Pipeline stages: **normalize -> segment -> extract -> embed -> store**.

:class:`IngestionService` coordinates the normalizer, the
:class:`TextSegmenter`, the :class:`MetadataExtractor`, the
:class:`EmbeddingBatcher` and the :class:`ChunkRepository` without any of
them knowing about each other.  Two inbound entry points exist:

* :meth:`IngestionService.process_document` -- replaces a document's whole
  chunk set (plain overlap segmentation).
* :meth:`IngestionService.process_knowledge_item` -- appends one item to a
  knowledge bot's chunks (context-stitched segmentation).  Items are also
  batch-ingested, replaced and deleted by title.

Every write for an owner, embedding included, runs inside that owner's
lock, so writes for one owner take effect in the order they arrived while
different owners proceed in parallel.  Failures come back as structured
results, never as raised exceptions.
"""

from __future__ import annotations

import time

import structlog

from docrag.models.rag import (
    Chunk,
    ChunkMetadata,
    DeletionResult,
    DocumentMetadata,
    EmbeddingUpdateResult,
    IngestionOptions,
    IngestionResult,
    KnowledgeBatchResult,
    KnowledgeItem,
    OwnerKind,
    OwnerStats,
)
from docrag.services.chunk_repository import ChunkRepository
from docrag.services.ingestion.chunker import TextSegmenter, mode_for
from docrag.services.ingestion.embedding_batcher import BatchEmbeddingOutcome, EmbeddingBatcher
from docrag.services.ingestion.metadata_extractor import MetadataExtractor
from docrag.utils.concurrency import OwnerLockRegistry
from docrag.utils.errors import (
    ChunkValidationError,
    DocRagError,
    ErrorKind,
    error_kind_of,
)
from docrag.utils.logging import bind_owner_context
from docrag.utils.text_normalizer import normalize_text

logger = structlog.get_logger(logger_name=__name__)


class IngestionService:
    """Coordinates the full ingestion pipeline for documents and knowledge bots.

    Parameters
    ----------
    repository:
        Chunk persistence with ownership invariants.
    batcher:
        Bounded embedding path.
    segmenter:
        Character-window segmenter; its sizes are the defaults for
        knowledge items.
    metadata_extractor:
        Document-level metadata recognizers.
    default_options:
        Options used by :meth:`process_document` when the caller passes none.
    locks:
        Per-owner lock registry; share one instance between services that
        write the same store.
    """

    def __init__(
        self,
        repository: ChunkRepository,
        batcher: EmbeddingBatcher,
        segmenter: TextSegmenter | None = None,
        metadata_extractor: MetadataExtractor | None = None,
        default_options: IngestionOptions | None = None,
        locks: OwnerLockRegistry | None = None,
    ) -> None:
        self._repository = repository
        self._batcher = batcher
        self._segmenter = segmenter or TextSegmenter()
        self._metadata_extractor = metadata_extractor or MetadataExtractor()
        self._default_options = default_options or IngestionOptions(
            chunk_size=self._segmenter.chunk_size,
            chunk_overlap=self._segmenter.overlap,
        )
        self._locks = locks or OwnerLockRegistry()

    # ------------------------------------------------------------------
    # Inbound entry points
    # ------------------------------------------------------------------

    async def process_document(
        self,
        owner_id: str,
        actor_id: str,
        raw_text: str,
        options: IngestionOptions | None = None,
        source_name: str = "",
        source_type: str = "",
    ) -> IngestionResult:
        """Replace *owner_id*'s chunks with a fresh segmentation of *raw_text*.

        The prior chunk set is deleted, and that delete has completed, before
        the new set is inserted.  Chunks whose batch failed to embed are
        stored anyway and flagged ``embedding_pending``.  Concurrent calls
        for one owner run one after another in the order they arrived, so
        the last submitted text is the one left in the store.
        """
        opts = options or self._default_options
        start = time.monotonic()
        kind = OwnerKind.DOCUMENT

        with bind_owner_context(owner_id, actor_id):
            text = normalize_text(raw_text)
            pieces = self._segmenter.segment(
                text, opts.chunk_size, opts.chunk_overlap, mode_for(kind)
            )
            document = (
                self._metadata_extractor.extract(text, source_name)
                if opts.extract_metadata
                else None
            )
            logger.info(
                "document_ingest_started",
                chunk_count=len(pieces),
                text_length=len(text),
                source_name=source_name,
            )

            async with self._locks.hold(owner_id):
                try:
                    outcome = await self._embed(pieces, opts.generate_embeddings)
                    removed = await self._repository.delete_by_owner(owner_id)
                    stored = await self._repository.insert(
                        self._build_chunks(
                            owner_id=owner_id,
                            kind=kind,
                            actor_id=actor_id,
                            pieces=pieces,
                            outcome=outcome,
                            first_index=0,
                            document=document,
                            source_name=source_name,
                            source_type=source_type,
                            title=source_name,
                        )
                    )
                except DocRagError as exc:
                    return self._failure(owner_id, kind, exc, start)

            logger.info("document_replaced", removed_count=removed, stored_count=len(stored))
            return self._result(owner_id, kind, stored, outcome, start)

    async def process_knowledge_item(
        self,
        owner_id: str,
        actor_id: str,
        title: str,
        raw_text: str,
        source_type: str = "knowledge",
    ) -> IngestionResult:
        """Append one knowledge item to bot *owner_id*'s chunks.

        New chunks continue the bot's index sequence, so indices stay
        contiguous across items.
        """
        return await self._write_knowledge_item(
            owner_id, actor_id, title, raw_text, source_type, replace=False
        )

    async def process_knowledge_items(
        self,
        owner_id: str,
        actor_id: str,
        items: list[KnowledgeItem],
    ) -> KnowledgeBatchResult:
        """Append several knowledge items to bot *owner_id*, one at a time.

        A failing item does not stop the batch, except for a configuration
        error, which would fail every later item the same way.
        """
        results: list[IngestionResult] = []
        errors: list[str] = []
        for position, item in enumerate(items):
            result = await self.process_knowledge_item(
                owner_id, actor_id, item.title, item.text, item.source_type
            )
            results.append(result)
            if result.success:
                continue
            errors.append(f"{item.title}: {result.error}")
            if result.error_kind is ErrorKind.CONFIGURATION:
                errors.extend(
                    f"{skipped.title}: skipped after configuration error"
                    for skipped in items[position + 1 :]
                )
                break

        processed = sum(1 for r in results if r.success)
        logger.info(
            "knowledge_batch_processed",
            owner_id=owner_id,
            item_count=len(items),
            processed_count=processed,
        )
        return KnowledgeBatchResult(
            success=processed == len(items),
            owner_id=owner_id,
            processed_count=processed,
            failed_count=len(items) - processed,
            errors=errors,
            results=results,
        )

    async def update_knowledge_item(
        self,
        owner_id: str,
        actor_id: str,
        title: str,
        raw_text: str,
        source_type: str = "knowledge",
    ) -> IngestionResult:
        """Replace the chunks of the bot's item *title* with a new segmentation.

        The old chunks are removed and the remaining items renumbered before
        the new chunks are appended at the end of the bot's sequence.
        """
        return await self._write_knowledge_item(
            owner_id, actor_id, title, raw_text, source_type, replace=True
        )

    async def delete_knowledge_item(self, owner_id: str, title: str) -> DeletionResult:
        """Remove the bot's item *title*; later items move down.  Idempotent."""
        async with self._locks.hold(owner_id):
            try:
                existing = await self._repository.list_by_owner(owner_id)
                self._require_knowledge_bot(owner_id, existing)
                deleted = await self._repository.remove_chunks(
                    owner_id, [c.chunk_id for c in existing if c.metadata.title == title]
                )
            except DocRagError as exc:
                return DeletionResult(
                    success=False,
                    owner_id=owner_id,
                    error=str(exc),
                    error_kind=error_kind_of(exc),
                )
        logger.info("knowledge_item_deleted", owner_id=owner_id, title=title, deleted_count=deleted)
        return DeletionResult(success=True, owner_id=owner_id, deleted_count=deleted)

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def update_embeddings(self, chunk_ids: list[str]) -> EmbeddingUpdateResult:
        """Regenerate embeddings for explicit chunk ids (as one unit)."""
        try:
            updated = await self._repository.update_embeddings(chunk_ids)
        except DocRagError as exc:
            return self._update_failure(len(chunk_ids), exc)
        return EmbeddingUpdateResult(
            success=True, requested_count=len(chunk_ids), updated_count=updated
        )

    async def backfill_owner(self, owner_id: str) -> EmbeddingUpdateResult:
        """Embed every chunk of *owner_id* still flagged as pending."""
        async with self._locks.hold(owner_id):
            try:
                pending = await self._repository.pending_chunk_ids(owner_id)
                if not pending:
                    return EmbeddingUpdateResult(success=True)
                updated = await self._repository.update_embeddings(pending)
            except DocRagError as exc:
                return self._update_failure(0, exc)
        logger.info("owner_backfilled", owner_id=owner_id, updated_count=updated)
        return EmbeddingUpdateResult(
            success=True, requested_count=len(pending), updated_count=updated
        )

    async def update_chunk_content(self, chunk_id: str, text: str) -> EmbeddingUpdateResult:
        """Apply an explicit content edit to one chunk and re-embed it."""
        try:
            await self._repository.update_content(chunk_id, text)
        except DocRagError as exc:
            return self._update_failure(1, exc)
        return EmbeddingUpdateResult(success=True, requested_count=1, updated_count=1)

    async def delete_owner(self, owner_id: str) -> DeletionResult:
        """Delete every chunk of *owner_id*; idempotent."""
        async with self._locks.hold(owner_id):
            try:
                deleted = await self._repository.delete_by_owner(owner_id)
            except DocRagError as exc:
                return DeletionResult(
                    success=False,
                    owner_id=owner_id,
                    error=str(exc),
                    error_kind=error_kind_of(exc),
                )
        return DeletionResult(success=True, owner_id=owner_id, deleted_count=deleted)

    async def get_owner_stats(self, owner_id: str) -> OwnerStats:
        return await self._repository.get_stats(owner_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _write_knowledge_item(
        self,
        owner_id: str,
        actor_id: str,
        title: str,
        raw_text: str,
        source_type: str,
        replace: bool,
    ) -> IngestionResult:
        start = time.monotonic()
        kind = OwnerKind.KNOWLEDGE_BOT

        with bind_owner_context(owner_id, actor_id):
            text = normalize_text(raw_text)
            pieces = self._segmenter.segment(text, mode=mode_for(kind))
            document = self._metadata_extractor.extract(text, title)

            async with self._locks.hold(owner_id):
                try:
                    existing = await self._repository.list_by_owner(owner_id)
                    previous = [c.chunk_id for c in existing if c.metadata.title == title]
                    if replace:
                        self._require_knowledge_bot(owner_id, existing)
                        if not previous:
                            raise ChunkValidationError(
                                message=f"Knowledge item {title!r} not found for {owner_id!r}"
                            )
                    outcome = await self._embed(pieces, generate=True)
                    removed = (
                        await self._repository.remove_chunks(owner_id, previous) if replace else 0
                    )
                    first_index = len(existing) - removed
                    stored = await self._repository.insert(
                        self._build_chunks(
                            owner_id=owner_id,
                            kind=kind,
                            actor_id=actor_id,
                            pieces=pieces,
                            outcome=outcome,
                            first_index=first_index,
                            document=document,
                            source_name=title,
                            source_type=source_type,
                            title=title,
                        )
                    )
                except DocRagError as exc:
                    return self._failure(owner_id, kind, exc, start)

            logger.info(
                "knowledge_item_replaced" if replace else "knowledge_item_appended",
                title=title,
                first_index=first_index,
                removed_count=removed,
                stored_count=len(stored),
            )
            return self._result(owner_id, kind, stored, outcome, start)

    @staticmethod
    def _require_knowledge_bot(owner_id: str, existing: list[Chunk]) -> None:
        if any(c.owner_kind is not OwnerKind.KNOWLEDGE_BOT for c in existing):
            raise ChunkValidationError(
                message=f"Owner {owner_id!r} is not a knowledge bot",
                affected_count=len(existing),
            )

    async def _embed(self, pieces: list[str], generate: bool) -> BatchEmbeddingOutcome:
        if not generate:
            return BatchEmbeddingOutcome(
                vectors=[None] * len(pieces),
                failed_indices=[],
            )
        return await self._batcher.embed_in_batches(pieces)

    def _build_chunks(
        self,
        *,
        owner_id: str,
        kind: OwnerKind,
        actor_id: str,
        pieces: list[str],
        outcome: BatchEmbeddingOutcome,
        first_index: int,
        document: DocumentMetadata | None,
        source_name: str,
        source_type: str,
        title: str,
    ) -> list[Chunk]:
        model = self._batcher.model_name
        chunks: list[Chunk] = []
        for position, (piece, vector) in enumerate(zip(pieces, outcome.vectors)):
            chunks.append(
                Chunk(
                    owner_id=owner_id,
                    owner_kind=kind,
                    actor_id=actor_id,
                    text=piece,
                    chunk_index=first_index + position,
                    metadata=ChunkMetadata(
                        document=document,
                        chunk_length=len(piece),
                        chunk_index=position,
                        total_chunks=len(pieces),
                        source_name=source_name,
                        source_type=source_type,
                        title=title,
                        embedding_pending=vector is None,
                    ),
                    embedding=vector,
                    embedding_model=model if vector is not None else None,
                )
            )
        return chunks

    @staticmethod
    def _result(
        owner_id: str,
        kind: OwnerKind,
        stored: list[Chunk],
        outcome: BatchEmbeddingOutcome,
        start: float,
    ) -> IngestionResult:
        pending = [c for c in stored if c.embedding is None]
        failed_positions = set(outcome.failed_indices)
        failed = [c.chunk_index for c in stored if c.metadata.chunk_index in failed_positions]
        success = not outcome.failed_indices
        return IngestionResult(
            success=success,
            owner_id=owner_id,
            owner_kind=kind,
            chunk_count=len(stored),
            embedded_count=len(stored) - len(pending),
            pending_chunk_ids=[c.chunk_id for c in pending],
            failed_chunk_indices=failed,
            partial_count=len(stored),
            error=None if success else outcome.error,
            error_kind=None if success else ErrorKind.PROVIDER,
            ingest_time=round(time.monotonic() - start, 3),
        )

    @staticmethod
    def _failure(owner_id: str, kind: OwnerKind, exc: DocRagError, start: float) -> IngestionResult:
        logger.error(
            "ingestion_failed",
            owner_id=owner_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return IngestionResult(
            success=False,
            owner_id=owner_id,
            owner_kind=kind,
            error=str(exc),
            error_kind=error_kind_of(exc),
            ingest_time=round(time.monotonic() - start, 3),
        )

    @staticmethod
    def _update_failure(requested: int, exc: DocRagError) -> EmbeddingUpdateResult:
        logger.error("embedding_update_failed", error_type=type(exc).__name__, error=str(exc))
        return EmbeddingUpdateResult(
            success=False,
            requested_count=requested,
            affected_count=getattr(exc, "affected_count", 0),
            error=str(exc),
            error_kind=error_kind_of(exc),
        )
