"""Chunk store adapters.

``ChromaDBChunkStore`` is imported from its module directly so that the
in-memory backend does not pull in chromadb.
"""

from docrag.providers.chunk_store.memory_chunk_store import InMemoryChunkStore

__all__ = ["InMemoryChunkStore"]
