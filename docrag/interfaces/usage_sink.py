"""Abstract destination for embedding usage records.

:class:`~docrag.services.usage_tracker.EmbeddingUsageTracker` batches usage
records and hands them to a sink.  A sink that raises leaves the records
queued for the next flush.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from docrag.services.usage_tracker import UsageRecord


class IUsageSink(ABC):
    """Contract for persisting embedding usage records."""

    @abstractmethod
    async def write(self, records: list[UsageRecord]) -> None:
        """Persist *records*.  Raise to signal that they must be retried."""

    @abstractmethod
    def get_sink_name(self) -> str:
        """Return a human-readable identifier, e.g. ``"log"``."""
