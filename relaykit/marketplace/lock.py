"""
Global install lock.

Every filesystem-mutating marketplace operation runs under one InstallLock,
so at most one install/upgrade/rollback/uninstall is in flight at a time,
across all plugin ids. Waiters are served strictly in arrival order.

There is no timeout: a stuck download or external process holds the lock
until it finishes.
"""

import asyncio
import collections
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class InstallLock:
    """FIFO asynchronous mutex."""

    def __init__(self):
        self._locked = False
        self._waiters: collections.deque[asyncio.Future] = collections.deque()

    def locked(self) -> bool:
        return self._locked

    async def acquire(self) -> None:
        if not self._locked and not self._waiters:
            self._locked = True
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was already handed over; pass it on
                self._wake_next()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        """
        Release the lock, handing it to the oldest waiter if any.

        Raises:
            RuntimeError: If the lock is not held
        """
        if not self._locked:
            raise RuntimeError("InstallLock is not acquired")
        self._wake_next()

    def _wake_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Lock stays held; ownership moves to the waiter
                waiter.set_result(None)
                return
        self._locked = False

    async def __aenter__(self) -> "InstallLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a coroutine function while holding the lock."""
        async with self:
            return await fn()
