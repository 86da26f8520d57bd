"""ChromaDB chunk store adapter.

Wraps ``chromadb.PersistentClient`` to implement :class:`IChunkStoreProvider`.
Uses an HNSW index in cosine space, so similarity search is approximate.

Chroma requires a vector for every record.  Chunks stored without an
embedding (pending backfill) get a placeholder unit vector and
``has_embedding=False``; every query filters on that flag so placeholders
are never scored.
"""

from __future__ import annotations

import json
import os
import uuid
from datetime import datetime
from typing import Any

# Disable ChromaDB telemetry before importing chromadb.  Some ChromaDB
# releases ship a PostHog client that breaks on capture(); the env var,
# ``posthog.disabled`` and the client Settings flag together silence it.
os.environ["ANONYMIZED_TELEMETRY"] = "False"

import posthog

posthog.disabled = True

import chromadb
import structlog

from docrag.interfaces.chunk_store_provider import IChunkStoreProvider
from docrag.models.rag import Chunk, ChunkMetadata, OwnerKind, RetrievedChunk
from docrag.utils.errors import ConfigurationError, DatastoreError

logger = structlog.get_logger(logger_name=__name__)

_PAGE_SIZE = 5000


class _NoopEmbeddingFunction(chromadb.EmbeddingFunction[list[str]]):
    """Embedding function that must never run.

    docrag always passes pre-computed vectors; this stops ChromaDB from
    loading its default ONNX model on collection creation.
    """

    def __call__(self, input: list[str]) -> list[list[float]]:
        raise NotImplementedError(
            "docrag uses pre-computed embeddings; "
            "ChromaDB's built-in embedding should never be called."
        )

    def name(self) -> str:
        return "noop_precomputed"


class ChromaDBChunkStore(IChunkStoreProvider):
    """Chunk store backed by ChromaDB with local persistence.

    Parameters
    ----------
    embedding_dimension:
        Dimensionality of the active embedding provider.  Checked against
        vectors already on disk at startup and used for placeholders.
    persist_directory:
        Directory for the SQLite + HNSW files.
    collection_name:
        Chroma collection holding every owner's chunks.
    """

    def __init__(
        self,
        embedding_dimension: int,
        persist_directory: str = "./data/chromadb",
        collection_name: str = "docrag_chunks",
    ) -> None:
        self._dimension = embedding_dimension
        self._persist_directory = persist_directory
        self._collection_name = collection_name
        self._client = chromadb.PersistentClient(
            path=persist_directory,
            settings=chromadb.config.Settings(anonymized_telemetry=False),
        )
        # Collections created by another ChromaDB version may have a
        # persisted embedding function that conflicts with the no-op one.
        try:
            self._collection = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"},
                embedding_function=_NoopEmbeddingFunction(),
            )
        except ValueError:
            self._collection = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"},
            )

        self._validate_embedding_dimensions()

    # ------------------------------------------------------------------
    # Startup validation
    # ------------------------------------------------------------------

    def _validate_embedding_dimensions(self) -> None:
        """Fail fast if stored vectors have a different dimensionality."""
        try:
            if self._collection.count() == 0:
                return
            sample = self._collection.peek(limit=1)
            embeddings = sample.get("embeddings") if sample else None
            if embeddings is None or len(embeddings) == 0:
                return
            stored_dim = len(embeddings[0])
        except Exception as exc:
            logger.warning("embedding_dimension_check_skipped", error=str(exc))
            return

        if stored_dim != self._dimension:
            logger.error(
                "embedding_dimension_mismatch",
                stored_dim=stored_dim,
                expected_dim=self._dimension,
                collection=self._collection_name,
            )
            raise ConfigurationError(
                message=(
                    f"Embedding dimension mismatch: collection "
                    f"{self._collection_name!r} has {stored_dim}-dim vectors but the "
                    f"embedding provider produces {self._dimension}-dim vectors. "
                    f"Set OPENAI_EMBEDDING_MODEL to the model used to build it."
                ),
                provider_name=self.get_provider_name(),
            )
        logger.info("embedding_dimension_validated", dimension=stored_dim)

    # ------------------------------------------------------------------
    # IChunkStoreProvider implementation
    # ------------------------------------------------------------------

    async def insert(self, chunks: list[Chunk]) -> list[Chunk]:
        if not chunks:
            return []
        stored = [
            c if c.chunk_id else c.model_copy(update={"chunk_id": str(uuid.uuid4())})
            for c in chunks
        ]
        try:
            self._collection.add(**self._to_records(stored))
        except Exception as exc:
            raise DatastoreError(
                message=f"ChromaDB insert failed: {exc}",
                provider_name=self.get_provider_name(),
                operation="insert",
                affected_count=len(stored),
            ) from exc

        logger.info("chromadb_insert_chunks", count=len(stored))
        return stored

    async def delete_by_owner(self, owner_id: str) -> int:
        try:
            existing = self._collection.get(where={"owner_id": owner_id}, include=[])
            ids = existing["ids"] or []
            if ids:
                self._collection.delete(ids=ids)
        except Exception as exc:
            raise DatastoreError(
                message=f"ChromaDB delete_by_owner failed: {exc}",
                provider_name=self.get_provider_name(),
                operation="delete_by_owner",
            ) from exc

        logger.info("chromadb_delete_by_owner", owner_id=owner_id, deleted_count=len(ids))
        return len(ids)

    async def delete_chunks(self, chunk_ids: list[str]) -> int:
        if not chunk_ids:
            return 0
        try:
            existing = self._collection.get(ids=list(dict.fromkeys(chunk_ids)), include=[])
            ids = existing["ids"] or []
            if ids:
                self._collection.delete(ids=ids)
        except Exception as exc:
            raise DatastoreError(
                message=f"ChromaDB delete failed: {exc}",
                provider_name=self.get_provider_name(),
                operation="delete_chunks",
                affected_count=len(chunk_ids),
            ) from exc

        logger.info("chromadb_delete_chunks", deleted_count=len(ids))
        return len(ids)

    async def get_chunks(self, chunk_ids: list[str]) -> list[Chunk]:
        if not chunk_ids:
            return []
        try:
            page = self._collection.get(
                ids=list(chunk_ids),
                include=["embeddings", "documents", "metadatas"],
            )
        except Exception as exc:
            raise DatastoreError(
                message=f"ChromaDB get failed: {exc}",
                provider_name=self.get_provider_name(),
                operation="get_chunks",
            ) from exc

        by_id = {c.chunk_id: c for c in self._from_page(page)}
        return [by_id[cid] for cid in chunk_ids if cid in by_id]

    async def list_chunks(self, owner_id: str) -> list[Chunk]:
        chunks: list[Chunk] = []
        offset = 0
        try:
            while True:
                page = self._collection.get(
                    where={"owner_id": owner_id},
                    include=["embeddings", "documents", "metadatas"],
                    limit=_PAGE_SIZE,
                    offset=offset,
                )
                batch = self._from_page(page)
                chunks.extend(batch)
                if len(batch) < _PAGE_SIZE:
                    break
                offset += _PAGE_SIZE
        except Exception as exc:
            raise DatastoreError(
                message=f"ChromaDB list failed: {exc}",
                provider_name=self.get_provider_name(),
                operation="list_chunks",
            ) from exc
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def update_chunks(self, chunks: list[Chunk]) -> int:
        if not chunks:
            return 0
        try:
            existing = self._collection.get(ids=[c.chunk_id for c in chunks], include=[])
            known = set(existing["ids"] or [])
            targets = [c for c in chunks if c.chunk_id in known]
            if targets:
                self._collection.update(**self._to_records(targets))
        except Exception as exc:
            raise DatastoreError(
                message=f"ChromaDB update failed: {exc}",
                provider_name=self.get_provider_name(),
                operation="update_chunks",
                affected_count=len(chunks),
            ) from exc
        return len(targets)

    async def similarity_search(
        self,
        owner_id: str,
        query_embedding: list[float],
        top_k: int,
        min_similarity: float,
        embedding_model: str | None = None,
    ) -> list[RetrievedChunk]:
        try:
            available = await self.count_embedded(owner_id, embedding_model)
            if available == 0 or top_k <= 0:
                return []

            # Over-fetch so threshold filtering and tie ordering have room.
            fetch_k = min(max(top_k * 4, top_k), available)
            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=fetch_k,
                where=self._embedded_where(owner_id, embedding_model),
                include=["embeddings", "documents", "metadatas", "distances"],
            )
        except DatastoreError:
            raise
        except Exception as exc:
            raise DatastoreError(
                message=f"ChromaDB query failed: {exc}",
                provider_name=self.get_provider_name(),
                operation="similarity_search",
            ) from exc

        ids = results["ids"][0] if results["ids"] else []
        if not ids:
            return []
        documents = results["documents"][0]
        metadatas = results["metadatas"][0]
        distances = results["distances"][0]
        embeddings = results["embeddings"][0] if results.get("embeddings") is not None else None

        scored: list[RetrievedChunk] = []
        for pos, chunk_id in enumerate(ids):
            similarity = max(0.0, min(1.0, 1.0 - float(distances[pos])))
            if similarity < min_similarity:
                continue
            vector = embeddings[pos] if embeddings is not None else None
            chunk = self._to_chunk(chunk_id, documents[pos], metadatas[pos], vector)
            scored.append(RetrievedChunk(chunk=chunk, similarity=similarity))

        scored.sort(key=lambda rc: (-rc.similarity, rc.chunk.chunk_index))
        retrieved = scored[:top_k]
        logger.info(
            "chromadb_query",
            owner_id=owner_id,
            raw_results=len(ids),
            results_count=len(retrieved),
            top_score=retrieved[0].similarity if retrieved else 0.0,
        )
        return retrieved

    async def count_embedded(self, owner_id: str, embedding_model: str | None = None) -> int:
        try:
            page = self._collection.get(
                where=self._embedded_where(owner_id, embedding_model),
                include=[],
            )
        except Exception as exc:
            raise DatastoreError(
                message=f"ChromaDB count failed: {exc}",
                provider_name=self.get_provider_name(),
                operation="count_embedded",
            ) from exc
        return len(page["ids"] or [])

    def get_provider_name(self) -> str:
        return "chromadb"

    def is_available(self) -> bool:
        try:
            self._client.heartbeat()
            return True
        except Exception:
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _embedded_where(owner_id: str, embedding_model: str | None) -> dict[str, Any]:
        clauses: list[dict[str, Any]] = [
            {"owner_id": owner_id},
            {"has_embedding": True},
        ]
        if embedding_model:
            clauses.append({"embedding_model": embedding_model})
        return {"$and": clauses}

    def _placeholder_vector(self) -> list[float]:
        return [1.0] + [0.0] * (self._dimension - 1)

    def _to_records(self, chunks: list[Chunk]) -> dict[str, Any]:
        return {
            "ids": [c.chunk_id for c in chunks],
            "documents": [c.text for c in chunks],
            "embeddings": [
                c.embedding if c.embedding is not None else self._placeholder_vector()
                for c in chunks
            ],
            "metadatas": [self._to_metadata(c) for c in chunks],
        }

    @staticmethod
    def _to_metadata(chunk: Chunk) -> dict[str, Any]:
        """Flatten a chunk into Chroma's scalar-only metadata."""
        return {
            "owner_id": chunk.owner_id,
            "owner_kind": chunk.owner_kind.value,
            "actor_id": chunk.actor_id,
            "chunk_index": chunk.chunk_index,
            "has_embedding": chunk.embedding is not None,
            "embedding_model": chunk.embedding_model or "",
            "created_at": chunk.created_at.isoformat(),
            "updated_at": chunk.updated_at.isoformat(),
            "chunk_metadata": chunk.metadata.model_dump_json(),
        }

    def _from_page(self, page: Any) -> list[Chunk]:
        ids = page["ids"] or []
        documents = page["documents"]
        metadatas = page["metadatas"]
        embeddings = page.get("embeddings")
        return [
            self._to_chunk(
                chunk_id,
                documents[pos],
                metadatas[pos],
                embeddings[pos] if embeddings is not None else None,
            )
            for pos, chunk_id in enumerate(ids)
        ]

    @staticmethod
    def _to_chunk(
        chunk_id: str,
        document: str,
        meta: dict[str, Any],
        vector: Any,
    ) -> Chunk:
        has_embedding = bool(meta.get("has_embedding"))
        return Chunk(
            chunk_id=chunk_id,
            owner_id=meta["owner_id"],
            owner_kind=OwnerKind(meta["owner_kind"]),
            actor_id=meta.get("actor_id", ""),
            text=document,
            chunk_index=int(meta["chunk_index"]),
            metadata=ChunkMetadata.model_validate(json.loads(meta["chunk_metadata"])),
            embedding=[float(v) for v in vector] if has_embedding and vector is not None else None,
            embedding_model=meta.get("embedding_model") or None,
            created_at=datetime.fromisoformat(meta["created_at"]),
            updated_at=datetime.fromisoformat(meta["updated_at"]),
        )
