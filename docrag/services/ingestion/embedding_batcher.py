"""Bounded, sequential batching in front of an embedding provider.

Texts are sent to the provider in fixed-size batches (default 10), one
batch at a time, so a burst never exceeds the provider's rate limit and a
failed call only affects the chunks in that batch.

Two entry points share the same per-batch call:

* :meth:`EmbeddingBatcher.embed_batch` -- all-or-nothing.  Returns exactly
  one vector per input text or raises.  Used for backfills, content edits
  and query embedding.
* :meth:`EmbeddingBatcher.embed_in_batches` -- ingestion path.  A batch
  that still fails after retries marks its positions (and every later
  position, which is never submitted) as failed, and the outcome carries
  ``None`` in their place so the caller can store them as pending.

A missing or rejected credential (:class:`ConfigurationError`) is never
retried and always propagates.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, Field

from docrag.interfaces.embedding_provider import IEmbeddingProvider
from docrag.utils.errors import (
    ConfigurationError,
    EmbeddingError,
    ProviderUnavailableError,
)

if TYPE_CHECKING:
    from docrag.services.usage_tracker import EmbeddingUsageTracker

logger = structlog.get_logger(logger_name=__name__)

DEFAULT_BATCH_SIZE = 10


class BatchEmbeddingOutcome(BaseModel):
    """Per-position result of :meth:`EmbeddingBatcher.embed_in_batches`."""

    model_config = ConfigDict(frozen=True)

    vectors: list[list[float] | None] = Field(default_factory=list)
    failed_batches: list[int] = Field(default_factory=list)
    failed_indices: list[int] = Field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.failed_indices

    @property
    def embedded_count(self) -> int:
        return len(self.vectors) - len(self.failed_indices)


class EmbeddingBatcher:
    """Groups texts into bounded batches and calls the embedding provider.

    Parameters
    ----------
    provider:
        The embedding backend.
    batch_size:
        Maximum texts per provider call.
    max_retries:
        Extra attempts per batch after a provider failure.
    retry_backoff:
        Base delay in seconds; attempt *n* waits ``retry_backoff * 2**n``.
    timeout_seconds:
        Per-call deadline, or ``None`` to rely on the provider's own timeout.
    usage_tracker:
        Optional accumulator notified after every successful call.
    """

    def __init__(
        self,
        provider: IEmbeddingProvider,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        timeout_seconds: float | None = None,
        usage_tracker: EmbeddingUsageTracker | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._provider = provider
        self._batch_size = batch_size
        self._max_retries = max(0, max_retries)
        self._retry_backoff = max(0.0, retry_backoff)
        self._timeout_seconds = timeout_seconds
        self._usage_tracker = usage_tracker

    @property
    def model_name(self) -> str:
        """Identity of the embedding space every vector from here belongs to."""
        return self._provider.get_model_name()

    @property
    def dimension(self) -> int:
        return self._provider.get_dimension()

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def provider(self) -> IEmbeddingProvider:
        return self._provider

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, returning exactly ``len(texts)`` vectors in order.

        Raises
        ------
        ConfigurationError
            Immediately, if the provider credential is missing or invalid.
        EmbeddingError
            If any batch fails after retries; ``affected_count`` is
            ``len(texts)`` since nothing is returned.
        """
        if not texts:
            return []

        vectors: list[list[float]] = []
        for batch_index, (_, batch) in enumerate(self._batches(texts)):
            try:
                vectors.extend(await self._call_with_retry(batch, batch_index))
            except EmbeddingError as exc:
                raise EmbeddingError(
                    message=exc.message,
                    provider_name=exc.provider_name,
                    batch_index=batch_index,
                    affected_count=len(texts),
                ) from exc
        return vectors

    async def embed_in_batches(self, texts: list[str]) -> BatchEmbeddingOutcome:
        """Embed *texts* batch by batch, isolating the first failing batch.

        Raises
        ------
        ConfigurationError
            Immediately, if the provider credential is missing or invalid.
        """
        vectors: list[list[float] | None] = [None] * len(texts)
        failed_batches: list[int] = []
        failure: EmbeddingError | None = None

        for batch_index, (offset, batch) in enumerate(self._batches(texts)):
            if failure is not None:
                failed_batches.append(batch_index)
                continue
            try:
                result = await self._call_with_retry(batch, batch_index)
            except EmbeddingError as exc:
                failure = exc
                failed_batches.append(batch_index)
                continue
            vectors[offset : offset + len(batch)] = result

        failed_indices = [pos for pos, vector in enumerate(vectors) if vector is None]
        if failure is not None:
            logger.warning(
                "embedding_batches_incomplete",
                provider=self._provider.get_provider_name(),
                failed_batches=failed_batches,
                pending_chunks=len(failed_indices),
                error=str(failure),
            )
        return BatchEmbeddingOutcome(
            vectors=vectors,
            failed_batches=failed_batches,
            failed_indices=failed_indices,
            error=str(failure) if failure is not None else None,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _batches(self, texts: list[str]) -> Iterator[tuple[int, list[str]]]:
        for offset in range(0, len(texts), self._batch_size):
            yield offset, texts[offset : offset + self._batch_size]

    async def _call_with_retry(self, batch: list[str], batch_index: int) -> list[list[float]]:
        last_error: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                return await self._call_provider(batch, batch_index)
            except ConfigurationError:
                raise
            except (EmbeddingError, ProviderUnavailableError) as exc:
                last_error = exc
                logger.warning(
                    "embedding_batch_failed",
                    provider=self._provider.get_provider_name(),
                    batch_index=batch_index,
                    attempt=attempt + 1,
                    error=str(exc),
                )
                if attempt < self._max_retries and self._retry_backoff > 0:
                    await asyncio.sleep(self._retry_backoff * (2**attempt))

        raise EmbeddingError(
            message=f"Batch {batch_index} failed after {self._max_retries + 1} attempts: {last_error}",
            provider_name=self._provider.get_provider_name(),
            batch_index=batch_index,
            affected_count=len(batch),
        ) from last_error

    async def _call_provider(self, batch: list[str], batch_index: int) -> list[list[float]]:
        try:
            if self._timeout_seconds is None:
                vectors = await self._provider.embed(batch)
            else:
                vectors = await asyncio.wait_for(
                    self._provider.embed(batch), timeout=self._timeout_seconds
                )
        except asyncio.TimeoutError as exc:
            raise EmbeddingError(
                message=f"Embedding call timed out after {self._timeout_seconds}s",
                provider_name=self._provider.get_provider_name(),
                batch_index=batch_index,
                affected_count=len(batch),
            ) from exc

        if len(vectors) != len(batch):
            raise EmbeddingError(
                message=f"Provider returned {len(vectors)} vectors for {len(batch)} texts",
                provider_name=self._provider.get_provider_name(),
                batch_index=batch_index,
                affected_count=len(batch),
            )
        expected = self._provider.get_dimension()
        for vector in vectors:
            if len(vector) != expected:
                raise EmbeddingError(
                    message=f"Provider returned a {len(vector)}-dim vector, expected {expected}",
                    provider_name=self._provider.get_provider_name(),
                    batch_index=batch_index,
                    affected_count=len(batch),
                )

        if self._usage_tracker is not None:
            self._usage_tracker.record(model=self.model_name, texts=batch)
        return [list(vector) for vector in vectors]
