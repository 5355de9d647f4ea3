"""Concurrency gate for upstream calls."""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque

from chat_router.errors import AdmissionRejected

logger = logging.getLogger(__name__)


class AdmissionQueue:
    """Counting semaphore with strict FIFO hand-off to waiting callers.

    A released slot is passed directly to the oldest waiter, so a newcomer
    can never overtake a request that is already queued.
    ``max_queue_depth=0`` leaves the queue unbounded.
    """

    def __init__(self, max_concurrent: int = 3, max_queue_depth: int = 0):
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        self.max_concurrent = max_concurrent
        self.max_queue_depth = max_queue_depth
        self._in_flight = 0
        self._waiters: Deque["asyncio.Future[None]"] = deque()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._in_flight < self.max_concurrent and not self._waiters:
            self._in_flight += 1
            return

        if self.max_queue_depth and self.queued >= self.max_queue_depth:
            logger.warning(
                "Admission queue full (%d waiting), rejecting request",
                self.queued,
            )
            raise AdmissionRejected("Too many requests are waiting")

        waiter: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("Request queued at position %d", len(self._waiters))
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over before the cancellation landed.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._in_flight > 0:
            self._in_flight -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def shutdown(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.cancel()
