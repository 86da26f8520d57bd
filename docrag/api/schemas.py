"""Pydantic request/response schemas for the docrag REST API.

Response bodies reuse the service result models where they already have
the right shape (:class:`IngestionResult`, :class:`DeletionResult`, ...);
the classes here cover request bodies and API-only envelopes.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from docrag.models.rag import IngestionOptions, KnowledgeItem, SearchMode


class DocumentIngestRequest(BaseModel):
    """Raw document text to (re-)ingest for an owner."""

    actor_id: str = Field(..., min_length=1)
    text: str
    source_name: str = ""
    source_type: str = ""
    options: IngestionOptions | None = None


class KnowledgeItemRequest(BaseModel):
    """One knowledge-base entry to append to a bot."""

    actor_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=500)
    text: str
    source_type: str = "knowledge"


class KnowledgeBatchRequest(BaseModel):
    """Several knowledge-base entries to append to a bot, in order."""

    actor_id: str = Field(..., min_length=1)
    items: list[KnowledgeItem] = Field(..., min_length=1)


class KnowledgeUpdateRequest(BaseModel):
    """New content for an existing knowledge item."""

    actor_id: str = Field(..., min_length=1)
    text: str
    source_type: str = "knowledge"


class SearchRequest(BaseModel):
    """Similarity search scoped to one owner."""

    query: str = Field(..., min_length=1, max_length=8000)
    mode: SearchMode = SearchMode.VECTOR
    top_k: int | None = Field(default=None, ge=1, le=100)
    min_similarity: float | None = Field(default=None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(
        default=None,
        ge=1,
        description="When set, results are trimmed to fit this token budget.",
    )


class SearchResult(BaseModel):
    text: str
    metadata: dict[str, Any]
    similarity: float
    chunk_id: str
    chunk_index: int


class SearchResponse(BaseModel):
    owner_id: str
    query: str
    results: list[SearchResult]
    total: int
    token_count: int | None = None


class SimilarChunksResponse(BaseModel):
    chunk_id: str
    results: list[SearchResult]
    total: int


class UpdateEmbeddingsRequest(BaseModel):
    chunk_ids: list[str] = Field(..., min_length=1)


class UpdateChunkRequest(BaseModel):
    text: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    """Application health check response."""

    status: str
    version: str
    providers: dict[str, Any]


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str | None = None
