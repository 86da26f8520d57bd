"""Pydantic v2 data models for docrag."""

from docrag.models.rag import (
    Chunk,
    ChunkMetadata,
    ContextWindow,
    DeletionResult,
    DocumentMetadata,
    EmbeddingUpdateResult,
    IngestionOptions,
    IngestionResult,
    KnowledgeBatchResult,
    KnowledgeItem,
    OwnerKind,
    OwnerStats,
    RetrievedChunk,
    SearchMode,
)

__all__ = [
    "Chunk",
    "ChunkMetadata",
    "ContextWindow",
    "DeletionResult",
    "DocumentMetadata",
    "EmbeddingUpdateResult",
    "IngestionOptions",
    "IngestionResult",
    "KnowledgeBatchResult",
    "KnowledgeItem",
    "OwnerKind",
    "OwnerStats",
    "RetrievedChunk",
    "SearchMode",
]
