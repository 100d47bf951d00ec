"""Slot accounting shared by coding workers and gate workers.

`max_concurrency` is a hard bound: the pool never hands out more slots than
its capacity, whoever asks. A released slot goes straight to the oldest
waiter, so `release()` stays synchronous and schedules nothing.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class SlotPool:
    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def free(self) -> int:
        """Slots available to `try_acquire` (waiters get freed slots first)."""
        return max(0, self.capacity - self._in_use - len(self._waiters))

    def try_acquire(self) -> bool:
        """Take a slot if one is free and nobody is waiting, without blocking."""
        if self.free <= 0:
            return False
        self._in_use += 1
        return True

    async def acquire(self) -> None:
        """Wait for a free slot and take it."""
        if self.try_acquire():
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before the cancel landed
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        if self._in_use <= 0:
            logger.error("SlotPool.release called with no slot in use")
            return
        self._in_use -= 1
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._in_use += 1
                waiter.set_result(None)
                return

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()
