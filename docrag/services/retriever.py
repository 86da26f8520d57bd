"""Owner-scoped semantic, keyword and hybrid retrieval.

The :class:`Retriever` embeds a query through the same
:class:`EmbeddingBatcher` used at ingestion, so query and chunk vectors come
from one embedding space, then asks the :class:`ChunkRepository` for the
best chunks above a similarity threshold.  It never formats prompts; chat
collaborators receive plain ``{text, metadata, similarity}`` dicts.

Keyword search scores chunks by query-term overlap and needs no vectors;
hybrid search blends both scores and can re-rank the blend.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

import structlog

from docrag.models.rag import Chunk, ContextWindow, RetrievedChunk, SearchMode
from docrag.services.chunk_repository import ChunkRepository
from docrag.utils.errors import ChunkValidationError, NoEmbeddedChunksError

if TYPE_CHECKING:
    from docrag.services.ingestion.embedding_batcher import EmbeddingBatcher

logger = structlog.get_logger(logger_name=__name__)

DEFAULT_TOP_K = 5
DEFAULT_MIN_SIMILARITY = 0.7
DEFAULT_CONTEXT_TOKENS = 4000
DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_KEYWORD_WEIGHT = 0.3
_CHARS_PER_TOKEN = 4
_PHRASE_BOOST = 1.2
_SHORT_CHUNK_BOOST = 1.1
_SHORT_CHUNK_CHARS = 500


class Retriever:
    """Top-K similarity retrieval for one owner at a time.

    Parameters
    ----------
    repository:
        Chunk persistence layer to query.
    batcher:
        Embedding path for query text (must be the ingestion batcher's provider).
    default_k:
        Result limit when the caller passes none.
    default_min_similarity:
        Threshold when the caller passes none.
    default_context_tokens:
        Token budget of :meth:`build_context_window` when the caller passes none.
    vector_weight, keyword_weight:
        Score weights of :meth:`hybrid_search`.
    """

    def __init__(
        self,
        repository: ChunkRepository,
        batcher: EmbeddingBatcher,
        default_k: int = DEFAULT_TOP_K,
        default_min_similarity: float = DEFAULT_MIN_SIMILARITY,
        default_context_tokens: int = DEFAULT_CONTEXT_TOKENS,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
    ) -> None:
        self._repository = repository
        self._batcher = batcher
        self._default_k = default_k
        self._default_min_similarity = default_min_similarity
        self._default_context_tokens = default_context_tokens
        self._vector_weight = vector_weight
        self._keyword_weight = keyword_weight

    async def retrieve(
        self,
        owner_id: str,
        query_text: str,
        k: int | None = None,
        min_similarity: float | None = None,
    ) -> list[RetrievedChunk]:
        """Return up to *k* of *owner_id*'s chunks most similar to *query_text*.

        Raises
        ------
        NoEmbeddedChunksError
            If the owner has no chunks embedded by the active model.
        ConfigurationError, EmbeddingError
            If the query cannot be embedded.
        """
        limit = self._default_k if k is None else k
        threshold = self._default_min_similarity if min_similarity is None else min_similarity
        model = self._batcher.model_name

        embedded = await self._repository.count_embedded(owner_id, model)
        if embedded == 0:
            raise NoEmbeddedChunksError(owner_id)

        query_embedding = (await self._batcher.embed_batch([query_text]))[0]
        results = await self._repository.similarity_query(
            owner_id,
            query_embedding,
            k=limit,
            min_similarity=threshold,
            embedding_model=model,
        )
        logger.info(
            "retrieval_complete",
            owner_id=owner_id,
            query_length=len(query_text),
            candidates=embedded,
            results_count=len(results),
            top_score=results[0].similarity if results else 0.0,
        )
        return results

    async def keyword_search(
        self,
        owner_id: str,
        query_text: str,
        k: int | None = None,
    ) -> list[RetrievedChunk]:
        """Rank *owner_id*'s chunks by the share of query terms they contain.

        Needs no embeddings, so pending chunks are searchable too.
        """
        limit = self._default_k if k is None else k
        results = await self._repository.keyword_query(owner_id, query_text, limit)
        logger.info(
            "keyword_retrieval_complete",
            owner_id=owner_id,
            query_length=len(query_text),
            results_count=len(results),
        )
        return results

    async def hybrid_search(
        self,
        owner_id: str,
        query_text: str,
        k: int | None = None,
        min_similarity: float | None = None,
        rerank: bool = True,
    ) -> list[RetrievedChunk]:
        """Blend vector and keyword scores with the configured weights.

        Both searches fetch twice the limit.  A chunk's score is
        ``vector_weight * similarity + keyword_weight * keyword_score``;
        the threshold applies to the vector half only.  With *rerank*,
        chunks containing the whole query verbatim are boosted by 1.2 and
        chunks under 500 characters by 1.1; reported scores are capped
        at 1.0.

        Raises
        ------
        NoEmbeddedChunksError
            If the owner has no chunks at all.
        ConfigurationError, EmbeddingError
            If the query cannot be embedded.
        """
        limit = self._default_k if k is None else k
        threshold = self._default_min_similarity if min_similarity is None else min_similarity
        model = self._batcher.model_name
        fetch = limit * 2

        vector_results: list[RetrievedChunk] = []
        if await self._repository.count_embedded(owner_id, model) > 0:
            query_embedding = (await self._batcher.embed_batch([query_text]))[0]
            vector_results = await self._repository.similarity_query(
                owner_id, query_embedding, k=fetch, min_similarity=threshold, embedding_model=model
            )
        keyword_results = await self._repository.keyword_query(owner_id, query_text, fetch)
        if not vector_results and not keyword_results:
            if not await self._repository.list_by_owner(owner_id):
                raise NoEmbeddedChunksError(owner_id)
            return []

        chunks: dict[str, Chunk] = {}
        scores: dict[str, float] = {}
        for results, weight in (
            (vector_results, self._vector_weight),
            (keyword_results, self._keyword_weight),
        ):
            for result in results:
                chunk_id = result.chunk.chunk_id
                chunks.setdefault(chunk_id, result.chunk)
                scores[chunk_id] = scores.get(chunk_id, 0.0) + result.similarity * weight

        ranked = sorted(scores, key=lambda cid: (-scores[cid], chunks[cid].chunk_index))
        if rerank:
            phrase = query_text.lower()
            for cid in ranked[:fetch]:
                text = chunks[cid].text
                if phrase in text.lower():
                    scores[cid] *= _PHRASE_BOOST
                if len(text) < _SHORT_CHUNK_CHARS:
                    scores[cid] *= _SHORT_CHUNK_BOOST
            ranked = sorted(
                ranked[:fetch], key=lambda cid: (-scores[cid], chunks[cid].chunk_index)
            )

        results = [
            RetrievedChunk(chunk=chunks[cid], similarity=min(1.0, scores[cid]))
            for cid in ranked[:limit]
        ]
        logger.info(
            "hybrid_retrieval_complete",
            owner_id=owner_id,
            vector_hits=len(vector_results),
            keyword_hits=len(keyword_results),
            results_count=len(results),
        )
        return results

    async def search(
        self,
        owner_id: str,
        query_text: str,
        mode: SearchMode = SearchMode.VECTOR,
        k: int | None = None,
        min_similarity: float | None = None,
    ) -> list[RetrievedChunk]:
        """Dispatch to :meth:`retrieve`, :meth:`keyword_search` or :meth:`hybrid_search`."""
        if mode is SearchMode.KEYWORD:
            return await self.keyword_search(owner_id, query_text, k)
        if mode is SearchMode.HYBRID:
            return await self.hybrid_search(owner_id, query_text, k, min_similarity)
        return await self.retrieve(owner_id, query_text, k, min_similarity)

    async def find_similar(
        self,
        chunk_id: str,
        k: int | None = None,
        min_similarity: float | None = None,
    ) -> list[RetrievedChunk]:
        """Return chunks of the same owner closest to chunk *chunk_id*, excluding itself.

        The stored vector is reused, so no provider call is made.

        Raises
        ------
        ChunkValidationError
            If the chunk does not exist or has no embedding from the active model.
        """
        limit = self._default_k if k is None else k
        threshold = self._default_min_similarity if min_similarity is None else min_similarity
        model = self._batcher.model_name

        chunk = await self._repository.get_chunk(chunk_id)
        if chunk is None:
            raise ChunkValidationError(message=f"Chunk {chunk_id!r} not found", affected_count=1)
        if chunk.embedding is None or chunk.embedding_model != model:
            raise ChunkValidationError(
                message=f"Chunk {chunk_id!r} has no {model} embedding",
                affected_count=1,
            )

        results = await self._repository.similarity_query(
            chunk.owner_id,
            chunk.embedding,
            k=limit + 1,
            min_similarity=threshold,
            embedding_model=model,
        )
        similar = [r for r in results if r.chunk.chunk_id != chunk_id][:limit]
        logger.info(
            "similar_chunks_found",
            chunk_id=chunk_id,
            owner_id=chunk.owner_id,
            results_count=len(similar),
        )
        return similar

    @staticmethod
    def to_context(results: list[RetrievedChunk]) -> list[dict[str, Any]]:
        """Hand-over shape for the chat collaborator."""
        return [r.as_context() for r in results]

    def build_context_window(
        self,
        results: list[RetrievedChunk],
        max_tokens: int | None = None,
    ) -> ContextWindow:
        """Keep results in rank order while their estimated tokens fit *max_tokens*.

        Tokens are estimated at four characters each.  Selection stops at the
        first result that would overflow the budget.
        """
        budget = self._default_context_tokens if max_tokens is None else max_tokens
        selected: list[RetrievedChunk] = []
        used = 0
        for result in results:
            tokens = math.ceil(len(result.chunk.text) / _CHARS_PER_TOKEN)
            if used + tokens > budget:
                break
            selected.append(result)
            used += tokens
        return ContextWindow(sources=selected, token_count=used)
