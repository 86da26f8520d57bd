"""RAG data models for the docrag chunk store.

Defines Pydantic v2 models for chunks, their metadata bags, retrieval
results, and the structured results returned by the ingestion entry points.
Value objects use frozen config; updates go through ``model_copy``.

Pipeline overview:

    1. NORMALIZE: raw text is whitespace-canonicalised.
    2. SEGMENT: the canonical text is cut into overlapping windows.
    3. EXTRACT: document-level metadata (counts, contacts, sections) is
       computed once and copied onto every chunk.
    4. EMBED: chunk texts are embedded in fixed-size batches.
    5. STORE: chunks (embedded or pending) are inserted for their owner.
    6. RETRIEVE: a query is embedded and compared against the owner's
       chunks; the best matches above a threshold are handed to chat.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from docrag.utils.errors import ErrorKind


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OwnerKind(str, Enum):
    """The kind of entity that owns a set of chunks."""

    DOCUMENT = "document"
    KNOWLEDGE_BOT = "knowledge_bot"


# ---------------------------------------------------------------------------
# Metadata bags
# ---------------------------------------------------------------------------
class DocumentMetadata(BaseModel):
    """Document-level facts extracted once per ingestion.

    Optional categories are ``None`` when nothing matched, so they are
    omitted from :meth:`as_dict` rather than stored as empty lists.
    """

    model_config = ConfigDict(frozen=True)

    char_count: int = Field(default=0, ge=0)
    word_count: int = Field(default=0, ge=0)
    line_count: int = Field(default=0, ge=0, description="Non-empty lines.")
    emails: list[str] | None = None
    phones: list[str] | None = None
    urls: list[str] | None = None
    dates: list[str] | None = None
    sections: list[str] | None = Field(
        default=None,
        description="Canonical names of section headings found in the text.",
    )
    extra: dict[str, Any] = Field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ChunkMetadata(BaseModel):
    """Per-chunk metadata: position, provenance, and the document bag."""

    model_config = ConfigDict(frozen=True)

    document: DocumentMetadata | None = None
    chunk_length: int = Field(default=0, ge=0)
    chunk_index: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    source_name: str = ""
    source_type: str = ""
    title: str = ""
    embedding_pending: bool = Field(
        default=False,
        description="True when the chunk was stored without a vector and awaits backfill.",
    )
    extra: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Chunk -- the unit of storage and retrieval.
# ---------------------------------------------------------------------------
class Chunk(BaseModel):
    """A segment of one owner's text, optionally carrying its embedding.

    ``chunk_id`` is empty until the chunk store assigns one on insert.
    ``embedding_model`` names the provider/model that produced the vector so
    that vectors from different embedding spaces are never compared.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str = ""
    owner_id: str = Field(min_length=1)
    owner_kind: OwnerKind
    actor_id: str = ""
    text: str
    chunk_index: int = Field(ge=0)
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    embedding: list[float] | None = None
    embedding_model: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


class RetrievedChunk(BaseModel):
    """A chunk returned from a similarity query with its score."""

    model_config = ConfigDict(frozen=True)

    chunk: Chunk
    similarity: float = Field(ge=0.0, le=1.0)

    def as_context(self) -> dict[str, Any]:
        """Return the ``{text, metadata, similarity}`` hand-over for chat."""
        return {
            "text": self.chunk.text,
            "metadata": self.chunk.metadata.model_dump(exclude_none=True, mode="json"),
            "similarity": self.similarity,
        }


class ContextWindow(BaseModel):
    """Retrieved chunks that fit within a prompt token budget."""

    model_config = ConfigDict(frozen=True)

    sources: list[RetrievedChunk] = Field(default_factory=list)
    token_count: int = Field(default=0, ge=0)

    @property
    def text(self) -> str:
        return "\n\n".join(source.chunk.text for source in self.sources)


# ---------------------------------------------------------------------------
# Ingestion inputs and structured results
# ---------------------------------------------------------------------------
class IngestionOptions(BaseModel):
    """Caller-tunable knobs for a document ingestion."""

    model_config = ConfigDict(frozen=True)

    chunk_size: int = Field(default=1000, ge=1)
    chunk_overlap: int = Field(default=200, ge=0)
    generate_embeddings: bool = True
    extract_metadata: bool = True

    @model_validator(mode="after")
    def _overlap_below_size(self) -> IngestionOptions:
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


class IngestionResult(BaseModel):
    """Outcome of one ingestion call.

    On partial embedding failure every chunk is still stored:
    ``chunk_count`` reports how many, ``pending_chunk_ids`` lists those
    awaiting a backfill, and ``success`` is ``False``.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    owner_id: str
    owner_kind: OwnerKind
    chunk_count: int = Field(default=0, ge=0)
    embedded_count: int = Field(default=0, ge=0)
    pending_chunk_ids: list[str] = Field(default_factory=list)
    failed_chunk_indices: list[int] = Field(default_factory=list)
    partial_count: int = Field(
        default=0,
        ge=0,
        description="Chunks that reached the store before the failure.",
    )
    error: str | None = None
    error_kind: ErrorKind | None = None
    ingest_time: float = Field(default=0.0, ge=0.0, description="Wall-clock seconds.")

    @property
    def pending_count(self) -> int:
        return len(self.pending_chunk_ids)


class EmbeddingUpdateResult(BaseModel):
    """Outcome of regenerating embeddings for a set of chunk ids."""

    model_config = ConfigDict(frozen=True)

    success: bool
    requested_count: int = Field(default=0, ge=0)
    updated_count: int = Field(default=0, ge=0)
    affected_count: int = Field(default=0, ge=0)
    error: str | None = None
    error_kind: ErrorKind | None = None


class DeletionResult(BaseModel):
    """Outcome of deleting every chunk of an owner."""

    model_config = ConfigDict(frozen=True)

    success: bool
    owner_id: str
    deleted_count: int = Field(default=0, ge=0)
    error: str | None = None
    error_kind: ErrorKind | None = None


class OwnerStats(BaseModel):
    """Aggregate statistics for one owner's chunks."""

    model_config = ConfigDict(frozen=True)

    owner_id: str
    chunk_count: int = Field(default=0, ge=0)
    embedded_count: int = Field(default=0, ge=0)
    pending_count: int = Field(default=0, ge=0)
    total_content_length: int = Field(default=0, ge=0)
    source_types: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Knowledge-base management and search modes
# ---------------------------------------------------------------------------
class KnowledgeItem(BaseModel):
    """One knowledge-base entry.  ``title`` identifies the item within its bot."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(min_length=1, max_length=500)
    text: str
    source_type: str = "knowledge"


class KnowledgeBatchResult(BaseModel):
    """Outcome of ingesting several knowledge items into one bot, item by item."""

    model_config = ConfigDict(frozen=True)

    success: bool
    owner_id: str
    processed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)
    results: list[IngestionResult] = Field(default_factory=list)


class SearchMode(str, Enum):
    """How a query is matched against an owner's chunks."""

    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"
