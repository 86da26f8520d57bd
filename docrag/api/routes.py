"""FastAPI routes for the docrag ingestion and retrieval API.

Service dependencies are resolved from ``app.state`` via ``Depends`` using
the ``Annotated`` pattern; ``main.py`` populates ``app.state`` at startup.

# Endpoint                                   Method  Description
# ---------------------------------------------------------------------
# /api/v1/documents/{owner_id}/ingest        POST    Replace a document's chunks
# /api/v1/bots/{owner_id}/knowledge          POST    Append a knowledge item
# /api/v1/bots/{owner_id}/knowledge/batch    POST    Append several knowledge items
# /api/v1/bots/{owner_id}/knowledge/{title}  PUT     Replace a knowledge item
# /api/v1/bots/{owner_id}/knowledge/{title}  DELETE  Delete a knowledge item
# /api/v1/owners/{owner_id}/search           POST    Vector, keyword or hybrid search
# /api/v1/owners/{owner_id}/chunks           DELETE  Delete all owner chunks
# /api/v1/owners/{owner_id}/backfill         POST    Embed pending chunks
# /api/v1/owners/{owner_id}/stats            GET     Owner statistics
# /api/v1/chunks/embeddings                  POST    Re-embed explicit chunk ids
# /api/v1/chunks/{chunk_id}                  PATCH   Edit one chunk's content
# /api/v1/chunks/{chunk_id}/similar          GET     Chunks similar to one chunk
# /api/v1/usage                              GET     Session embedding usage
# /api/v1/health                             GET     Health + provider status

Ingestion-style endpoints return their structured result with status 200
on success, 207 when chunks were stored but some embeddings are pending,
and a kind-specific error status when nothing was stored.
"""

from __future__ import annotations

import asyncio
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from docrag import __version__
from docrag.api.middleware import status_for_kind
from docrag.api.schemas import (
    DocumentIngestRequest,
    HealthResponse,
    KnowledgeBatchRequest,
    KnowledgeItemRequest,
    KnowledgeUpdateRequest,
    SearchRequest,
    SearchResponse,
    SearchResult,
    SimilarChunksResponse,
    UpdateChunkRequest,
    UpdateEmbeddingsRequest,
)
from docrag.models.rag import (
    DeletionResult,
    EmbeddingUpdateResult,
    IngestionResult,
    KnowledgeBatchResult,
    OwnerStats,
    RetrievedChunk,
)
from docrag.services.ingestion.ingestion_service import IngestionService
from docrag.services.retriever import Retriever
from docrag.services.usage_tracker import EmbeddingUsageTracker
from docrag.utils.errors import NoEmbeddedChunksError
from docrag.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service


def _get_retriever(request: Request) -> Retriever:
    return request.app.state.retriever


def _get_usage_tracker(request: Request) -> EmbeddingUsageTracker:
    return request.app.state.usage_tracker


IngestionDep = Annotated[IngestionService, Depends(_get_ingestion_service)]
RetrieverDep = Annotated[Retriever, Depends(_get_retriever)]
UsageTrackerDep = Annotated[EmbeddingUsageTracker, Depends(_get_usage_tracker)]


def _ingest_status(result: IngestionResult) -> int:
    if result.success:
        return 200
    if result.chunk_count > 0:
        return 207
    return status_for_kind(result.error_kind)


def _update_status(result: EmbeddingUpdateResult | DeletionResult) -> int:
    return 200 if result.success else status_for_kind(result.error_kind)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


@router.post("/documents/{owner_id}/ingest", response_model=IngestionResult)
async def ingest_document(
    owner_id: str,
    body: DocumentIngestRequest,
    response: Response,
    service: IngestionDep,
) -> IngestionResult:
    result = await service.process_document(
        owner_id=owner_id,
        actor_id=body.actor_id,
        raw_text=body.text,
        options=body.options,
        source_name=body.source_name,
        source_type=body.source_type,
    )
    response.status_code = _ingest_status(result)
    return result


@router.post("/bots/{owner_id}/knowledge", response_model=IngestionResult)
async def add_knowledge_item(
    owner_id: str,
    body: KnowledgeItemRequest,
    response: Response,
    service: IngestionDep,
) -> IngestionResult:
    result = await service.process_knowledge_item(
        owner_id=owner_id,
        actor_id=body.actor_id,
        title=body.title,
        raw_text=body.text,
        source_type=body.source_type,
    )
    response.status_code = _ingest_status(result)
    return result


@router.post("/bots/{owner_id}/knowledge/batch", response_model=KnowledgeBatchResult)
async def add_knowledge_items(
    owner_id: str,
    body: KnowledgeBatchRequest,
    response: Response,
    service: IngestionDep,
) -> KnowledgeBatchResult:
    result = await service.process_knowledge_items(owner_id, body.actor_id, body.items)
    if result.success:
        response.status_code = 200
    elif any(r.chunk_count > 0 for r in result.results):
        response.status_code = 207
    else:
        response.status_code = status_for_kind(result.results[0].error_kind)
    return result


@router.put("/bots/{owner_id}/knowledge/{title}", response_model=IngestionResult)
async def update_knowledge_item(
    owner_id: str,
    title: str,
    body: KnowledgeUpdateRequest,
    response: Response,
    service: IngestionDep,
) -> IngestionResult:
    result = await service.update_knowledge_item(
        owner_id=owner_id,
        actor_id=body.actor_id,
        title=title,
        raw_text=body.text,
        source_type=body.source_type,
    )
    response.status_code = _ingest_status(result)
    return result


@router.delete("/bots/{owner_id}/knowledge/{title}", response_model=DeletionResult)
async def delete_knowledge_item(
    owner_id: str,
    title: str,
    response: Response,
    service: IngestionDep,
) -> DeletionResult:
    result = await service.delete_knowledge_item(owner_id, title)
    response.status_code = _update_status(result)
    return result


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@router.post("/owners/{owner_id}/search", response_model=SearchResponse)
async def search_owner(
    owner_id: str,
    body: SearchRequest,
    retriever: RetrieverDep,
) -> SearchResponse:
    try:
        results = await retriever.search(
            owner_id,
            body.query,
            mode=body.mode,
            k=body.top_k,
            min_similarity=body.min_similarity,
        )
    except NoEmbeddedChunksError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc

    token_count: int | None = None
    if body.max_tokens is not None:
        window = retriever.build_context_window(results, body.max_tokens)
        results = window.sources
        token_count = window.token_count

    return SearchResponse(
        owner_id=owner_id,
        query=body.query,
        results=[_search_result(r) for r in results],
        total=len(results),
        token_count=token_count,
    )


@router.get("/chunks/{chunk_id}/similar", response_model=SimilarChunksResponse)
async def similar_chunks(
    chunk_id: str,
    retriever: RetrieverDep,
    top_k: Annotated[int | None, Query(ge=1, le=100)] = None,
    min_similarity: Annotated[float | None, Query(ge=0.0, le=1.0)] = None,
) -> SimilarChunksResponse:
    results = await retriever.find_similar(chunk_id, k=top_k, min_similarity=min_similarity)
    return SimilarChunksResponse(
        chunk_id=chunk_id,
        results=[_search_result(r) for r in results],
        total=len(results),
    )


def _search_result(result: RetrievedChunk) -> SearchResult:
    return SearchResult(
        chunk_id=result.chunk.chunk_id,
        chunk_index=result.chunk.chunk_index,
        **result.as_context(),
    )


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@router.delete("/owners/{owner_id}/chunks", response_model=DeletionResult)
async def delete_owner_chunks(
    owner_id: str,
    response: Response,
    service: IngestionDep,
) -> DeletionResult:
    result = await service.delete_owner(owner_id)
    response.status_code = _update_status(result)
    return result


@router.post("/owners/{owner_id}/backfill", response_model=EmbeddingUpdateResult)
async def backfill_owner(
    owner_id: str,
    response: Response,
    service: IngestionDep,
) -> EmbeddingUpdateResult:
    result = await service.backfill_owner(owner_id)
    response.status_code = _update_status(result)
    return result


@router.get("/owners/{owner_id}/stats", response_model=OwnerStats)
async def owner_stats(owner_id: str, service: IngestionDep) -> OwnerStats:
    return await service.get_owner_stats(owner_id)


@router.post("/chunks/embeddings", response_model=EmbeddingUpdateResult)
async def update_chunk_embeddings(
    body: UpdateEmbeddingsRequest,
    response: Response,
    service: IngestionDep,
) -> EmbeddingUpdateResult:
    result = await service.update_embeddings(body.chunk_ids)
    response.status_code = _update_status(result)
    return result


@router.patch("/chunks/{chunk_id}", response_model=EmbeddingUpdateResult)
async def update_chunk_content(
    chunk_id: str,
    body: UpdateChunkRequest,
    response: Response,
    service: IngestionDep,
) -> EmbeddingUpdateResult:
    result = await service.update_chunk_content(chunk_id, body.text)
    response.status_code = _update_status(result)
    return result


# ---------------------------------------------------------------------------
# Operational
# ---------------------------------------------------------------------------


@router.get("/usage")
async def embedding_usage(tracker: UsageTrackerDep) -> dict[str, Any]:
    usage = tracker.session_usage()
    return {
        "models": {model: totals.model_dump() for model, totals in usage.items()},
        "pending_records": tracker.pending_count,
        "dropped_records": tracker.dropped_count,
    }


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    embedding_provider = request.app.state.embedding_provider
    chunk_store = request.app.state.chunk_store
    providers = {
        "embedding": {
            "name": embedding_provider.get_provider_name(),
            "model": embedding_provider.get_model_name(),
            "available": await asyncio.to_thread(embedding_provider.is_available),
        },
        "chunk_store": {
            "name": chunk_store.get_provider_name(),
            "available": await asyncio.to_thread(chunk_store.is_available),
        },
    }
    status = "healthy" if all(p["available"] for p in providers.values()) else "degraded"
    return HealthResponse(status=status, version=__version__, providers=providers)
