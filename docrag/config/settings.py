"""Application settings loaded from environment variables via pydantic-settings.

Sources, highest priority first:

  1. **Environment variables** -- e.g. ``OPENAI_API_KEY=sk-abc123``
  2. **.env file** -- key=value lines in the project root
  3. **config/config.yaml** -- layered in by :func:`docrag.config.loader.load_settings`
  4. Field defaults below

Field ``openai_api_key`` maps to env var ``OPENAI_API_KEY`` automatically.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """docrag application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Embedding provider ===
    # Empty key = "not configured"; ingestion with embeddings enabled then
    # fails fast with a configuration error before touching the store.
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_embedding_model: str = "text-embedding-3-small"
    ollama_base_url: str = "http://localhost:11434"
    embedding_provider: Literal["openai", "nomic"] = "openai"
    embedding_batch_size: int = Field(default=10, ge=1)
    embedding_max_retries: int = Field(default=2, ge=0)
    embedding_retry_backoff: float = Field(default=0.5, ge=0.0)
    embedding_timeout_seconds: float = Field(default=30.0, gt=0.0)

    # === Segmentation ===
    chunk_size: int = Field(default=1000, ge=1)
    chunk_overlap: int = Field(default=200, ge=0)

    # === Chunk store ===
    chunk_store: Literal["memory", "chromadb"] = "memory"
    chromadb_persist_dir: str = "./data/chromadb"
    chromadb_collection: str = "docrag_chunks"

    # === Retrieval ===
    retrieval_top_k: int = Field(default=5, ge=1)
    retrieval_min_similarity: float = Field(default=0.7, ge=0.0, le=1.0)
    context_max_tokens: int = Field(default=4000, ge=1)
    retrieval_vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    retrieval_keyword_weight: float = Field(default=0.3, ge=0.0, le=1.0)

    # === Usage accounting ===
    usage_flush_interval: float = Field(default=5.0, gt=0.0)
    usage_flush_threshold: int = Field(default=10, ge=1)
    usage_max_pending: int = Field(default=10_000, ge=1)

    # === App Config ===
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _overlap_below_size(self) -> Settings:
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    def has_embedding_credentials(self) -> bool:
        """Return ``True`` if the selected embedding provider can authenticate.

        The local Nomic/Ollama provider needs no key, only a base URL.
        """
        if self.embedding_provider == "nomic":
            return bool(self.ollama_base_url)
        return bool(self.openai_api_key)
