from __future__ import annotations

import asyncio
from collections import deque


DEFAULT_CAPACITY = 5


class GateError(RuntimeError):
    """Slot accounting went out of bounds (release without a matching acquire)."""


class GateReset(Exception):
    """Raised in queued acquirers discarded by ``SubscriptionGate.reset``."""


class SubscriptionGate:
    """FIFO counting gate for outstanding subscribe/unsubscribe requests.

    Must only be used from the event loop thread.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._available = capacity
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._generation = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def available(self) -> int:
        return self._available

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    async def acquire(self) -> None:
        if self._available > 0 and not self._waiters:
            self._available -= 1
            return

        generation = self._generation
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled() and fut.exception() is None:
                # slot was handed over just before the cancel landed
                if generation == self._generation:
                    self.release()
            else:
                self._remove_waiter(fut)
            raise
        if generation != self._generation:
            raise GateReset("gate reset while waiting for a slot")

    def release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # hand the slot straight to the oldest waiter
                fut.set_result(None)
                return
        if self._available >= self._capacity:
            raise GateError(
                f"release() with no outstanding request (capacity={self._capacity})"
            )
        self._available += 1

    def reset(self) -> None:
        waiters = self._waiters
        self._waiters = deque()
        self._available = self._capacity
        self._generation += 1
        for fut in waiters:
            if not fut.done():
                fut.set_exception(GateReset("gate reset on reconnect"))

    def _remove_waiter(self, fut: asyncio.Future[None]) -> None:
        try:
            self._waiters.remove(fut)
        except ValueError:
            pass
