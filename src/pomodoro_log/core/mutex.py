"""Minimal FIFO mutex for serializing read-modify-persist sequences."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class Mutex:
    """First-in first-out mutual exclusion for coroutines.

    The lock is handed directly to the oldest waiter on release, so a
    coroutine that arrives later can never overtake one that is already
    queued. Not reentrant: acquiring twice from the same task deadlocks.

    Usage:
        mutex = Mutex()

        await mutex.acquire()
        try:
            ...
        finally:
            mutex.release()

        # or
        result = await with_mutex(mutex, some_coroutine_function)
    """

    def __init__(self) -> None:
        self._locked = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def locked(self) -> bool:
        """Whether some caller currently holds the lock."""
        return self._locked

    @property
    def waiting(self) -> int:
        """Number of callers queued for the lock."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Wait until the lock is granted to the caller."""
        if not self._locked:
            self._locked = True
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # Ownership was transferred before the cancellation landed
            if waiter.done() and not waiter.cancelled():
                self.release()
            raise

    def release(self) -> None:
        """Hand the lock to the next waiter, or mark it free."""
        if not self._locked:
            raise RuntimeError("Mutex released while not held")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

        self._locked = False

    async def __aenter__(self) -> Mutex:
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


async def with_mutex(mutex: Mutex, fn: Callable[[], Awaitable[T]]) -> T:
    """Run ``fn`` while holding ``mutex``, releasing it on every exit path."""
    async with mutex:
        return await fn()
