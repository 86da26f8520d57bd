"""Shared pytest fixtures for the docrag test suite."""

from __future__ import annotations

import hashlib
import struct

import pytest

from docrag.interfaces.embedding_provider import IEmbeddingProvider
from docrag.interfaces.usage_sink import IUsageSink
from docrag.models.rag import IngestionOptions
from docrag.providers.chunk_store.memory_chunk_store import InMemoryChunkStore
from docrag.services.chunk_repository import ChunkRepository
from docrag.services.ingestion.chunker import TextSegmenter
from docrag.services.ingestion.embedding_batcher import EmbeddingBatcher
from docrag.services.ingestion.ingestion_service import IngestionService
from docrag.services.ingestion.metadata_extractor import MetadataExtractor
from docrag.services.retriever import Retriever
from docrag.services.usage_tracker import EmbeddingUsageTracker, UsageRecord
from docrag.utils.concurrency import OwnerLockRegistry
from docrag.utils.errors import EmbeddingError

EMBEDDING_DIM = 16
FAIL_MARKER = "EMBEDFAIL"


# ---------------------------------------------------------------------------
# Deterministic providers
# ---------------------------------------------------------------------------


def hash_to_vector(text: str) -> list[float]:
    """Map *text* to a stable unit vector; identical text gives identical vectors."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    values = [v / 32768.0 for v in struct.unpack(f">{EMBEDDING_DIM}h", digest)]
    magnitude = sum(v * v for v in values) ** 0.5 or 1.0
    return [v / magnitude for v in values]


class MockEmbeddingProvider(IEmbeddingProvider):
    """In-memory deterministic embedding provider for tests.

    Any batch containing a text with :data:`FAIL_MARKER` raises
    :class:`EmbeddingError` while ``fail_on_marker`` is set.
    """

    def __init__(self, model: str = "mock-embedding-v1", fail_on_marker: bool = True) -> None:
        self.model = model
        self.fail_on_marker = fail_on_marker
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_on_marker and any(FAIL_MARKER in t for t in texts):
            raise EmbeddingError(message="marker text rejected", provider_name="mock-embedding")
        return [hash_to_vector(t) for t in texts]

    async def embed_single(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]

    def get_dimension(self) -> int:
        return EMBEDDING_DIM

    def get_model_name(self) -> str:
        return self.model

    def get_provider_name(self) -> str:
        return "mock-embedding"

    def is_available(self) -> bool:
        return True


class FlakyEmbeddingProvider(MockEmbeddingProvider):
    """Raises the given error for the first *failures* calls, then behaves."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        super().__init__(fail_on_marker=False)
        self._remaining = failures
        self._error = error or EmbeddingError(message="transient", provider_name="mock-embedding")

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if self._remaining > 0:
            self._remaining -= 1
            self.calls.append(list(texts))
            raise self._error
        return await super().embed(texts)


class RecordingUsageSink(IUsageSink):
    """Collects flushed usage records; optionally fails every write."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.records: list[UsageRecord] = []
        self.writes = 0

    async def write(self, records: list[UsageRecord]) -> None:
        self.writes += 1
        if self.fail:
            raise RuntimeError("sink offline")
        self.records.extend(records)

    def get_sink_name(self) -> str:
        return "recording"


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_embedding_provider() -> MockEmbeddingProvider:
    return MockEmbeddingProvider()


@pytest.fixture
def memory_store() -> InMemoryChunkStore:
    return InMemoryChunkStore()


@pytest.fixture
def usage_sink() -> RecordingUsageSink:
    return RecordingUsageSink()


@pytest.fixture
def usage_tracker(usage_sink: RecordingUsageSink) -> EmbeddingUsageTracker:
    return EmbeddingUsageTracker(sink=usage_sink, flush_interval=60.0, flush_threshold=1000)


@pytest.fixture
def batcher(
    mock_embedding_provider: MockEmbeddingProvider,
    usage_tracker: EmbeddingUsageTracker,
) -> EmbeddingBatcher:
    return EmbeddingBatcher(
        mock_embedding_provider,
        batch_size=2,
        max_retries=1,
        retry_backoff=0.0,
        usage_tracker=usage_tracker,
    )


@pytest.fixture
def repository(memory_store: InMemoryChunkStore, batcher: EmbeddingBatcher) -> ChunkRepository:
    return ChunkRepository(memory_store, batcher)


@pytest.fixture
def ingestion_service(repository: ChunkRepository, batcher: EmbeddingBatcher) -> IngestionService:
    return IngestionService(
        repository=repository,
        batcher=batcher,
        segmenter=TextSegmenter(chunk_size=120, overlap=30),
        metadata_extractor=MetadataExtractor(),
        default_options=IngestionOptions(chunk_size=120, chunk_overlap=30),
        locks=OwnerLockRegistry(),
    )


@pytest.fixture
def retriever(repository: ChunkRepository, batcher: EmbeddingBatcher) -> Retriever:
    return Retriever(repository, batcher, default_k=5, default_min_similarity=0.0)


@pytest.fixture
def long_text() -> str:
    """Roughly 1,200 characters of sentence-structured prose."""
    sentences = [
        f"Sentence number {i} describes topic {i % 7} in plain words." for i in range(24)
    ]
    paragraphs = [" ".join(sentences[i : i + 6]) for i in range(0, 24, 6)]
    return "\n\n".join(paragraphs)
