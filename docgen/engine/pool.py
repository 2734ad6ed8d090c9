"""Counting pool that bounds concurrent outbound calls."""

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ConcurrencyPool:
    """
    FIFO counting semaphore with an adjustable limit.

    `acquire()` admits the caller immediately while fewer than `limit`
    holders are active and nobody is queued; otherwise the caller waits in
    FIFO order. `release()` hands the slot to the oldest waiter.

    Usage:
        pool = ConcurrencyPool(limit=4)
        async with pool.slot():
            await call_service()
    """

    def __init__(self, limit: int = 4):
        self._limit = max(1, int(limit))
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        """Number of holders currently admitted."""
        return self._active

    @property
    def waiting(self) -> int:
        """Number of callers queued for a slot."""
        return sum(1 for w in self._waiters if not w.done())

    def set_limit(self, limit: int) -> None:
        """Change the limit for future admissions (clamped to at least 1)."""
        self._limit = max(1, int(limit))
        logger.debug(f"Pool limit set to {self._limit}")
        # A raised limit may admit queued callers right away
        self._wake()

    async def acquire(self) -> None:
        """Wait for a slot."""
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Admitted, then cancelled before resuming: give the slot back
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Release a slot, admitting the next waiter if any."""
        if self._active <= 0:
            raise RuntimeError("ConcurrencyPool.release() called without a matching acquire()")
        self._active -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._active < self._limit:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold a slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()


async def fan_out(
    items: Iterable[T],
    worker: Callable[[T, int], Awaitable[R]],
    limit: int = 1,
) -> list[R]:
    """
    Run `worker(item, index)` for every item with at most `limit` in flight.

    Results keep the order of `items`. The first exception propagates after
    the remaining workers are cancelled.
    """
    pool = ConcurrencyPool(limit)

    async def run(item: T, index: int) -> R:
        async with pool.slot():
            return await worker(item, index)

    tasks = [asyncio.ensure_future(run(item, i)) for i, item in enumerate(items)]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
