"""Counting FIFO admission gate for concurrently submitted work units."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class AdmissionGate:
    """Admit at most `limit` coroutines at once, queued ones strictly in arrival order.

    Unlike `asyncio.Semaphore`, a released slot is handed directly to the oldest
    waiter, so a late submission can never overtake a queued one.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("`limit` must be a positive integer.")
        self.limit = limit
        self._running = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._waiters)

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Wait for admission, then await `factory()` and release the slot."""

        await self._admit()
        try:
            return await factory()
        finally:
            self._release()

    async def _admit(self) -> None:
        if self._running < self.limit and not self._waiters:
            self._running += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was already handed over; pass it on.
                self._release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # The running count transfers to the admitted waiter.
                waiter.set_result(None)
                return
        self._running -= 1
