"""Abstract base class for chunk-store providers.

The chunk store is the opaque datastore behind
:class:`~docrag.services.chunk_repository.ChunkRepository`.  It persists
chunks with their embeddings and answers owner-scoped similarity searches.
Ownership invariants (contiguous indices, no duplicate positions, one owner
kind per owner) are enforced by the repository, not by the store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from docrag.models.rag import Chunk, RetrievedChunk


# Concrete implementations (docrag/providers/chunk_store/):
#   InMemoryChunkStore  -- exact cosine similarity with numpy
#   ChromaDBChunkStore  -- chromadb PersistentClient, approximate HNSW search
class IChunkStoreProvider(ABC):
    """Contract for chunk persistence and owner-scoped similarity search.

    All methods are async so network-backed stores do not block the loop.
    Implementations wrap backend failures in
    :class:`~docrag.utils.errors.DatastoreError`.
    """

    @abstractmethod
    async def insert(self, chunks: list[Chunk]) -> list[Chunk]:
        """Persist *chunks* and return them with store-assigned ``chunk_id`` values.

        Insertion is all-or-nothing for the given list.
        """

    @abstractmethod
    async def delete_by_owner(self, owner_id: str) -> int:
        """Delete every chunk of *owner_id*; return how many were removed.

        Deleting an owner with no chunks returns ``0``.
        """

    @abstractmethod
    async def delete_chunks(self, chunk_ids: list[str]) -> int:
        """Delete the chunks whose ids are in *chunk_ids*; return how many were removed.

        Unknown ids are skipped.
        """

    @abstractmethod
    async def get_chunks(self, chunk_ids: list[str]) -> list[Chunk]:
        """Return the chunks whose ids are in *chunk_ids*.

        Unknown ids are skipped; order follows *chunk_ids*.
        """

    @abstractmethod
    async def list_chunks(self, owner_id: str) -> list[Chunk]:
        """Return every chunk of *owner_id* ordered by ``chunk_index``."""

    @abstractmethod
    async def update_chunks(self, chunks: list[Chunk]) -> int:
        """Overwrite stored chunks matched by ``chunk_id``; return the count written."""

    @abstractmethod
    async def similarity_search(
        self,
        owner_id: str,
        query_embedding: list[float],
        top_k: int,
        min_similarity: float,
        embedding_model: str | None = None,
    ) -> list[RetrievedChunk]:
        """Return up to *top_k* embedded chunks of *owner_id* scoring >= *min_similarity*.

        Parameters
        ----------
        owner_id:
            Only this owner's chunks are considered.
        query_embedding:
            Query vector, same dimensionality as the stored vectors.
        top_k:
            Maximum number of results.
        min_similarity:
            Cosine similarity threshold in ``[0, 1]``.
        embedding_model:
            When given, only chunks embedded by this model are compared.

        Returns
        -------
        list[RetrievedChunk]
            Ordered by descending similarity, ties by ascending
            ``chunk_index``.
        """

    @abstractmethod
    async def count_embedded(self, owner_id: str, embedding_model: str | None = None) -> int:
        """Return how many of *owner_id*'s chunks carry an embedding."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier, e.g. ``"chromadb"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the store is reachable."""
