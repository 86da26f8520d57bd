"""Abstract base class for text-embedding service providers.

Implementations wrap OpenAI ``text-embedding-3-small`` or Nomic
``nomic-embed-text`` (local via Ollama); tests use a deterministic
hash-based double.  Providers are interchangeable behind this contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   OpenAIEmbeddingProvider -- text-embedding-3-small (requires API key)
#   NomicEmbeddingProvider  -- nomic-embed-text via Ollama (local)
# Located in: docrag/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by the ingestion pipeline.

    Vectors produced here are persisted by
    :class:`~docrag.interfaces.chunk_store_provider.IChunkStoreProvider`
    and compared at query time.
    """

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Parameters
        ----------
        texts:
            One or more text strings to embed.

        Returns
        -------
        list[list[float]]
            Embedding vectors corresponding positionally to *texts*.  Each
            inner list has length equal to :meth:`get_dimension`.

        Raises
        ------
        docrag.utils.errors.ConfigurationError
            If the provider credential is missing or rejected.
        docrag.utils.errors.RateLimitError
            If the provider throttled the request.
        docrag.utils.errors.EmbeddingError
            If the embedding API call fails for any other reason.
        """

    @abstractmethod
    async def embed_single(self, text: str) -> list[float]:
        """Generate an embedding vector for a single text string."""

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors.

        Constant for the lifetime of the provider instance.  Example values:
        ``1536`` (OpenAI ``text-embedding-3-small``), ``768`` (Nomic).
        """

    @abstractmethod
    def get_model_name(self) -> str:
        """Return the identity of the embedding space, e.g. ``"text-embedding-3-small"``.

        Stored on every chunk as ``embedding_model``; vectors are only
        compared when this value matches.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier, e.g. ``"openai_embedding"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured and reachable.

        Implementations check credentials without generating an embedding.
        """
