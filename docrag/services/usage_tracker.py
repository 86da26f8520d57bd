"""Embedding usage accounting with periodic batched flushes.

:class:`EmbeddingUsageTracker` is an explicit accumulator: the application
factory constructs one, passes it to every :class:`EmbeddingBatcher`, and
drives its lifecycle with :meth:`~EmbeddingUsageTracker.start` and
:meth:`~EmbeddingUsageTracker.stop`.

Each successful provider call becomes a :class:`UsageRecord` with an
estimated token count and cost.  Records queue up and are written to an
:class:`~docrag.interfaces.usage_sink.IUsageSink` when ``flush_threshold``
records are pending or every ``flush_interval`` seconds, whichever comes
first.  A sink failure puts the records back at the head of the queue; past
``max_pending`` queued records the oldest are dropped and counted.
"""

from __future__ import annotations

import asyncio
import math
import re

import structlog
from pydantic import BaseModel, ConfigDict, Field

from docrag.interfaces.usage_sink import IUsageSink
from docrag.models.rag import utc_now

logger = structlog.get_logger(logger_name=__name__)

# USD per one million input tokens.
_COST_PER_MILLION_TOKENS: dict[str, float] = {
    "text-embedding-ada-002": 0.10,
    "text-embedding-3-small": 0.02,
    "text-embedding-3-large": 0.13,
}

_HANGUL = re.compile(r"[\uac00-\ud7af\u1100-\u11ff\u3130-\u318f]")
_CHARS_PER_TOKEN = 4.0
_CHARS_PER_TOKEN_HANGUL = 2.5


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 4 characters per token, 2.5 when Hangul is present."""
    if not text:
        return 0
    ratio = _CHARS_PER_TOKEN_HANGUL if _HANGUL.search(text) else _CHARS_PER_TOKEN
    return math.ceil(len(text) / ratio)


def estimate_cost(model: str, tokens: int) -> float:
    """Estimated USD cost of embedding *tokens* with *model* (0.0 when unknown)."""
    return tokens * _COST_PER_MILLION_TOKENS.get(model, 0.0) / 1_000_000


class UsageRecord(BaseModel):
    """One provider call's worth of embedding usage."""

    model_config = ConfigDict(frozen=True)

    model: str
    operation: str = "embed"
    text_count: int = Field(default=0, ge=0)
    estimated_tokens: int = Field(default=0, ge=0)
    estimated_cost: float = Field(default=0.0, ge=0.0)
    recorded_at: str = Field(default_factory=lambda: utc_now().isoformat())


class ModelUsage(BaseModel):
    """Running session totals for one embedding model."""

    model: str
    calls: int = 0
    text_count: int = 0
    estimated_tokens: int = 0
    estimated_cost: float = 0.0


class LoggingUsageSink(IUsageSink):
    """Default sink: writes each flushed batch as a structured log event."""

    async def write(self, records: list[UsageRecord]) -> None:
        logger.info(
            "embedding_usage_flushed",
            records=len(records),
            tokens=sum(r.estimated_tokens for r in records),
            cost=round(sum(r.estimated_cost for r in records), 8),
            models=sorted({r.model for r in records}),
        )

    def get_sink_name(self) -> str:
        return "log"


class EmbeddingUsageTracker:
    """Accumulates embedding usage and flushes it to a sink in batches.

    Parameters
    ----------
    sink:
        Destination for flushed records (default :class:`LoggingUsageSink`).
    flush_interval:
        Seconds between background flushes while started.
    flush_threshold:
        Pending record count that triggers an early flush.
    max_pending:
        Queue bound; when a failing sink lets records pile up past it the
        oldest are dropped.
    """

    def __init__(
        self,
        sink: IUsageSink | None = None,
        flush_interval: float = 5.0,
        flush_threshold: int = 10,
        max_pending: int = 10_000,
    ) -> None:
        self._sink = sink or LoggingUsageSink()
        self._flush_interval = flush_interval
        self._flush_threshold = max(1, flush_threshold)
        self._max_pending = max(1, max_pending)
        self._dropped = 0
        self._pending: list[UsageRecord] = []
        self._session: dict[str, ModelUsage] = {}
        self._flush_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background flush loop (no-op if already running)."""
        if self.is_running:
            return
        self._wake.clear()
        self._task = asyncio.create_task(self._run(), name="embedding-usage-flush")
        logger.info(
            "usage_tracker_started",
            sink=self._sink.get_sink_name(),
            flush_interval=self._flush_interval,
            flush_threshold=self._flush_threshold,
        )

    async def stop(self) -> None:
        """Stop the flush loop and flush whatever is still pending."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush()
        logger.info("usage_tracker_stopped", pending=len(self._pending))

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, model: str, texts: list[str], operation: str = "embed") -> UsageRecord:
        """Account for one provider call embedding *texts* with *model*."""
        tokens = sum(estimate_tokens(t) for t in texts)
        entry = UsageRecord(
            model=model,
            operation=operation,
            text_count=len(texts),
            estimated_tokens=tokens,
            estimated_cost=estimate_cost(model, tokens),
        )
        self._pending.append(entry)
        self._trim_pending()

        totals = self._session.setdefault(model, ModelUsage(model=model))
        totals.calls += 1
        totals.text_count += entry.text_count
        totals.estimated_tokens += entry.estimated_tokens
        totals.estimated_cost += entry.estimated_cost

        if len(self._pending) >= self._flush_threshold:
            self._wake.set()
        return entry

    async def flush(self) -> int:
        """Write all pending records to the sink; return how many were written.

        On sink failure the records are re-queued ahead of any recorded
        meanwhile, the queue is trimmed to ``max_pending``, and ``0`` is
        returned.
        """
        async with self._flush_lock:
            if not self._pending:
                return 0
            batch, self._pending = self._pending, []
            try:
                await self._sink.write(batch)
            except Exception as exc:
                self._pending = batch + self._pending
                self._trim_pending()
                logger.warning(
                    "usage_flush_failed",
                    sink=self._sink.get_sink_name(),
                    requeued=len(batch),
                    error=str(exc),
                )
                return 0
            return len(batch)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def session_usage(self) -> dict[str, ModelUsage]:
        """Per-model totals since construction (or the last reset)."""
        return {model: usage.model_copy() for model, usage in self._session.items()}

    def reset_session(self) -> None:
        self._session.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _trim_pending(self) -> None:
        overflow = len(self._pending) - self._max_pending
        if overflow <= 0:
            return
        del self._pending[:overflow]
        self._dropped += overflow
        logger.warning(
            "usage_records_dropped",
            dropped=overflow,
            dropped_total=self._dropped,
            max_pending=self._max_pending,
        )

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._flush_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            await self.flush()
