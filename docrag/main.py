"""docrag FastAPI application entry point.

Wires providers and services together via dependency injection.  Loads
configuration from ``config/config.yaml`` with ``.env`` and environment
overrides, configures structured logging, and owns the lifecycle of the
embedding usage tracker.

:func:`build_services` is also used by the CLI so both surfaces share one
wiring path.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI

from docrag import __version__
from docrag.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from docrag.api.routes import router as api_router
from docrag.config.loader import load_settings
from docrag.config.settings import Settings
from docrag.interfaces.chunk_store_provider import IChunkStoreProvider
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
from docrag.services.usage_tracker import EmbeddingUsageTracker
from docrag.utils.concurrency import OwnerLockRegistry
from docrag.utils.logging import configure_logging, get_logger

_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Provider factories
# ---------------------------------------------------------------------------


def _build_embedding_provider(app_settings: Settings) -> IEmbeddingProvider:
    """Instantiate the embedding provider named by ``EMBEDDING_PROVIDER``."""
    if app_settings.embedding_provider == "nomic":
        from docrag.providers.embedding.nomic_embedding_provider import (
            NomicEmbeddingProvider,
        )

        return NomicEmbeddingProvider(settings=app_settings)

    from docrag.providers.embedding.openai_embedding_provider import (
        OpenAIEmbeddingProvider,
    )

    return OpenAIEmbeddingProvider(settings=app_settings)


def _build_chunk_store(app_settings: Settings, dimension: int) -> IChunkStoreProvider:
    """Instantiate the chunk store named by ``CHUNK_STORE``.

    chromadb is imported lazily so the in-memory backend works without it.
    """
    if app_settings.chunk_store == "chromadb":
        from docrag.providers.chunk_store.chromadb_chunk_store import ChromaDBChunkStore

        return ChromaDBChunkStore(
            embedding_dimension=dimension,
            persist_directory=app_settings.chromadb_persist_dir,
            collection_name=app_settings.chromadb_collection,
        )
    return InMemoryChunkStore()


def build_services(
    custom_settings: Settings | None = None,
    *,
    embedding_provider: IEmbeddingProvider | None = None,
    chunk_store: IChunkStoreProvider | None = None,
    usage_sink: IUsageSink | None = None,
) -> dict[str, Any]:
    """Construct every provider and service.

    Explicit providers override the ones the settings would select, which
    is how tests inject deterministic doubles.

    Returns a flat dict of named components, stored on ``app.state`` by the
    application lifespan.
    """
    app_settings = custom_settings or load_settings()

    if embedding_provider is None and not app_settings.has_embedding_credentials():
        _logger.warning(
            "embedding_credentials_missing",
            embedding_provider=app_settings.embedding_provider,
            hint="ingestion with embeddings enabled will fail until configured",
        )
    provider = embedding_provider or _build_embedding_provider(app_settings)
    store = chunk_store or _build_chunk_store(app_settings, provider.get_dimension())

    usage_tracker = EmbeddingUsageTracker(
        sink=usage_sink,
        flush_interval=app_settings.usage_flush_interval,
        flush_threshold=app_settings.usage_flush_threshold,
        max_pending=app_settings.usage_max_pending,
    )
    batcher = EmbeddingBatcher(
        provider,
        batch_size=app_settings.embedding_batch_size,
        max_retries=app_settings.embedding_max_retries,
        retry_backoff=app_settings.embedding_retry_backoff,
        timeout_seconds=app_settings.embedding_timeout_seconds,
        usage_tracker=usage_tracker,
    )
    repository = ChunkRepository(store, batcher)
    segmenter = TextSegmenter(
        chunk_size=app_settings.chunk_size,
        overlap=app_settings.chunk_overlap,
    )
    ingestion_service = IngestionService(
        repository=repository,
        batcher=batcher,
        segmenter=segmenter,
        metadata_extractor=MetadataExtractor(),
        default_options=IngestionOptions(
            chunk_size=app_settings.chunk_size,
            chunk_overlap=app_settings.chunk_overlap,
        ),
        locks=OwnerLockRegistry(),
    )
    retriever = Retriever(
        repository,
        batcher,
        default_k=app_settings.retrieval_top_k,
        default_min_similarity=app_settings.retrieval_min_similarity,
        default_context_tokens=app_settings.context_max_tokens,
        vector_weight=app_settings.retrieval_vector_weight,
        keyword_weight=app_settings.retrieval_keyword_weight,
    )

    _logger.info(
        "services_built",
        embedding_provider=provider.get_provider_name(),
        embedding_model=provider.get_model_name(),
        chunk_store=store.get_provider_name(),
        batch_size=app_settings.embedding_batch_size,
    )
    return {
        "settings": app_settings,
        "embedding_provider": provider,
        "chunk_store": store,
        "usage_tracker": usage_tracker,
        "batcher": batcher,
        "repository": repository,
        "ingestion_service": ingestion_service,
        "retriever": retriever,
    }


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app(
    custom_settings: Settings | None = None,
    components: dict[str, Any] | None = None,
) -> FastAPI:
    """Build and configure the FastAPI application.

    When *components* is given (a :func:`build_services` result) the
    lifespan uses it instead of building its own.
    """
    app_settings = custom_settings or (components or {}).get("settings") or load_settings()
    configure_logging(app_settings.log_level)

    @asynccontextmanager
    async def _lifespan(application: FastAPI):  # noqa: ANN202
        built = components or build_services(app_settings)
        for key, value in built.items():
            setattr(application.state, key, value)

        tracker: EmbeddingUsageTracker = built["usage_tracker"]
        await tracker.start()
        _logger.info(
            "app_startup",
            version=__version__,
            environment=app_settings.app_env,
            chunk_store=built["chunk_store"].get_provider_name(),
        )

        yield

        await tracker.stop()
        _logger.info("app_shutdown", usage=len(tracker.session_usage()))

    application = FastAPI(
        title="docrag API",
        version=__version__,
        description=(
            "Ingest long-form documents and knowledge-base entries into "
            "owner-scoped, vector-searchable chunks and retrieve the best "
            "chunks for a query."
        ),
        lifespan=_lifespan,
    )

    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application)

    application.include_router(api_router)
    return application


def main() -> None:
    """Run the API with uvicorn using the configured host and port."""
    app_settings = load_settings()
    uvicorn.run(
        create_app(app_settings),
        host=app_settings.app_host,
        port=app_settings.app_port,
        log_level=app_settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
