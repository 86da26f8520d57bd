"""Abstract provider contracts for docrag's external collaborators."""

from docrag.interfaces.chunk_store_provider import IChunkStoreProvider
from docrag.interfaces.embedding_provider import IEmbeddingProvider
from docrag.interfaces.usage_sink import IUsageSink

__all__ = ["IChunkStoreProvider", "IEmbeddingProvider", "IUsageSink"]
