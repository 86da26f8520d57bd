"""Unit tests for service wiring in docrag.main."""

from __future__ import annotations

from pathlib import Path

from docrag.config.settings import Settings
from docrag.main import build_services
from docrag.providers.chunk_store.memory_chunk_store import InMemoryChunkStore
from docrag.providers.embedding.nomic_embedding_provider import NomicEmbeddingProvider
from docrag.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from tests.conftest import MockEmbeddingProvider


class TestBuildServices:
    def test_defaults_to_openai_and_memory(self) -> None:
        services = build_services(Settings(openai_api_key="sk-test", chunk_store="memory"))

        assert isinstance(services["embedding_provider"], OpenAIEmbeddingProvider)
        assert isinstance(services["chunk_store"], InMemoryChunkStore)
        assert services["batcher"].provider is services["embedding_provider"]
        assert set(services) == {
            "settings",
            "embedding_provider",
            "chunk_store",
            "usage_tracker",
            "batcher",
            "repository",
            "ingestion_service",
            "retriever",
        }

    def test_selects_nomic(self) -> None:
        services = build_services(Settings(embedding_provider="nomic", chunk_store="memory"))
        assert isinstance(services["embedding_provider"], NomicEmbeddingProvider)

    def test_chromadb_store_uses_provider_dimension(self, tmp_path: Path) -> None:
        from docrag.providers.chunk_store.chromadb_chunk_store import ChromaDBChunkStore

        services = build_services(
            Settings(
                chunk_store="chromadb",
                chromadb_persist_dir=str(tmp_path / "chroma"),
                chromadb_collection="wiring",
            ),
            embedding_provider=MockEmbeddingProvider(),
        )
        assert isinstance(services["chunk_store"], ChromaDBChunkStore)

    def test_batch_size_from_settings(self) -> None:
        services = build_services(
            Settings(embedding_batch_size=3, chunk_store="memory"),
            embedding_provider=MockEmbeddingProvider(),
        )
        assert services["batcher"].batch_size == 3
