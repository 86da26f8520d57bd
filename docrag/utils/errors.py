"""Custom exception hierarchy for docrag.

All application exceptions inherit from :class:`DocRagError`, which
carries an optional ``provider_name`` so error handlers can identify which
external collaborator (e.g. "openai", "chromadb") caused the failure.

The hierarchy is organized by failure kind:

    DocRagError  (base -- catch-all for any docrag error)
    +-- ConfigurationError       (missing credential / invalid settings)
    +-- EmbeddingError           (embedding provider call failed)
    |   +-- RateLimitError       (provider rate-limit exceeded)
    +-- ProviderUnavailableError (provider down / unreachable)
    +-- ChunkValidationError     (chunk invariants violated)
    |   +-- NoEmbeddedChunksError
    +-- DatastoreError           (chunk store write/read failed)

Ingestion entry points classify any of these into an :class:`ErrorKind`
so callers receive a structured failure instead of an exception.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Coarse failure category reported in structured results."""

    CONFIGURATION = "configuration"
    PROVIDER = "provider"
    VALIDATION = "validation"
    DATASTORE = "datastore"


class DocRagError(Exception):
    """Base exception for all docrag errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name``.  ``__str__`` prefixes the provider name in brackets,
    e.g. ``[openai_embedding] Rate limit exceeded``.
    """

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(DocRagError):
    """Raised when a credential or setting is missing or invalid.

    Never retried: the batcher and ingestion service surface it immediately.
    """

    kind = ErrorKind.CONFIGURATION

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Embedding provider errors
# ---------------------------------------------------------------------------

class EmbeddingError(DocRagError):
    """Raised when an embedding call fails or returns a malformed response.

    ``batch_index`` identifies the failed batch when raised by the batcher;
    ``affected_count`` is the number of chunks left without a vector.
    """

    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str = "Embedding generation failed",
        provider_name: str | None = None,
        batch_index: int | None = None,
        affected_count: int = 0,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self.batch_index = batch_index
        self.affected_count = affected_count


class RateLimitError(EmbeddingError):
    """Raised when a provider rate limit is exceeded.

    Retried with backoff by the embedding batcher.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
        batch_index: int | None = None,
        affected_count: int = 0,
    ) -> None:
        super().__init__(
            message=message,
            provider_name=provider_name,
            batch_index=batch_index,
            affected_count=affected_count,
        )


class ProviderUnavailableError(DocRagError):
    """Raised when an external provider is unreachable."""

    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str = "External service is unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------

class ChunkValidationError(DocRagError):
    """Raised when a chunk write would break an owner's chunk invariants."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str = "Chunk validation failed",
        provider_name: str | None = None,
        affected_count: int = 0,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self.affected_count = affected_count


class NoEmbeddedChunksError(ChunkValidationError):
    """Raised when retrieval targets an owner with zero embedded chunks."""

    def __init__(self, owner_id: str) -> None:
        super().__init__(message=f"Owner {owner_id!r} has no embedded chunks")
        self.owner_id = owner_id


# ---------------------------------------------------------------------------
# Datastore errors
# ---------------------------------------------------------------------------

class DatastoreError(DocRagError):
    """Raised when the chunk store rejects or fails an operation."""

    kind = ErrorKind.DATASTORE

    def __init__(
        self,
        message: str = "Chunk store operation failed",
        provider_name: str | None = None,
        operation: str = "",
        affected_count: int = 0,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self.operation = operation
        self.affected_count = affected_count


def error_kind_of(exc: BaseException) -> ErrorKind:
    """Classify *exc* into an :class:`ErrorKind`.

    Non-docrag exceptions are reported as datastore failures since every
    other collaborator wraps its own errors.
    """
    if isinstance(exc, DocRagError):
        return exc.kind
    return ErrorKind.DATASTORE
