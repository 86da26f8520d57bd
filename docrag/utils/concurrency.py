"""Shared concurrency primitives for the ingestion pipeline.

Two patterns are exposed:

1. **OwnerLockRegistry** -- one ``asyncio.Lock`` per owner id.  Every write
   path for an owner (re-ingest, knowledge append, delete, backfill) runs
   inside that owner's lock, so "delete old chunks, then insert new ones"
   can never interleave with another write for the same owner.  Different
   owners never contend.

2. **throttled_gather** -- ``asyncio.gather`` with a semaphore, used to
   ingest many owners in parallel without flooding the embedding provider.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog

from docrag.utils.logging import get_logger

_T = TypeVar("_T")

_logger: structlog.BoundLogger = get_logger(__name__)


class OwnerLockRegistry:
    """Lazily created per-owner locks.

    A lock lives only while some task holds or waits on it; the last task
    to leave :meth:`hold` evicts it, so the registry stays bounded by the
    number of owners currently being written.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def is_locked(self, owner_id: str) -> bool:
        lock = self._locks.get(owner_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, owner_id: str) -> AsyncIterator[None]:
        """Acquire *owner_id*'s lock for the duration of the block.

        Waiters are served in arrival order.
        """
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner_id] = lock
        elif lock.locked():
            _logger.debug("owner_lock_wait", owner_id=owner_id)
        self._holders[owner_id] = self._holders.get(owner_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[owner_id] - 1
            if remaining:
                self._holders[owner_id] = remaining
            else:
                del self._holders[owner_id]
                del self._locks[owner_id]

    def __len__(self) -> int:
        return len(self._locks)


async def throttled_gather(
    coros: list[Awaitable[_T]],
    semaphore: asyncio.Semaphore | None = None,
    limit: int = 4,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently, at most *limit* at a time.

    Parameters
    ----------
    coros:
        Awaitable objects to execute concurrently.
    semaphore:
        Optional shared semaphore.  When omitted a fresh one sized *limit*
        is created for this call.
    limit:
        Concurrency bound used when no semaphore is supplied.
    return_exceptions:
        Mirrors ``asyncio.gather``: exceptions are returned in place of
        results instead of being raised.

    Returns
    -------
    list[_T | BaseException]
        Results in the same order as the input awaitables.
    """
    if semaphore is None:
        semaphore = asyncio.Semaphore(max(1, limit))

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    tasks = [_wrapped(c) for c in coros]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)
