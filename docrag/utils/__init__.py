"""Utility modules for docrag.

- **errors** -- exception hierarchy rooted at DocRagError plus the
  ErrorKind classification used in structured results.
- **logging** -- structlog setup with a dual console/JSON renderer.
- **concurrency** -- per-owner asyncio locks and a throttled gather.
- **text_normalizer** -- whitespace canonicalisation before segmentation.
"""

# -- Domain exception hierarchy --------------------------------------------
from docrag.utils.errors import (
    ChunkValidationError,
    ConfigurationError,
    DatastoreError,
    DocRagError,
    EmbeddingError,
    ErrorKind,
    NoEmbeddedChunksError,
    ProviderUnavailableError,
    RateLimitError,
    error_kind_of,
)

# -- Async concurrency helpers ---------------------------------------------
from docrag.utils.concurrency import OwnerLockRegistry, throttled_gather

# -- Structured logging setup ----------------------------------------------
from docrag.utils.logging import bind_owner_context, configure_logging, get_logger

# -- Text normalization ----------------------------------------------------
from docrag.utils.text_normalizer import normalize_text

__all__ = [
    "ChunkValidationError",
    "ConfigurationError",
    "DatastoreError",
    "DocRagError",
    "EmbeddingError",
    "ErrorKind",
    "NoEmbeddedChunksError",
    "OwnerLockRegistry",
    "ProviderUnavailableError",
    "RateLimitError",
    "bind_owner_context",
    "configure_logging",
    "error_kind_of",
    "get_logger",
    "normalize_text",
    "throttled_gather",
]
