"""
Async read-write lock: many concurrent readers OR one exclusive writer.

Writer preference: once a writer is waiting, new readers wait too, so a
steady stream of lookups can't starve cache inserts and evictions.

Usage:
    lock = AsyncReadWriteLock()

    async with lock.read():
        entry = cache.get(key)

    async with lock.write():
        cache[key] = entry
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class AsyncReadWriteLock:
    def __init__(self) -> None:
        self._readers: int = 0
        self._writers_waiting: int = 0
        self._writer_active: bool = False
        self._cond = asyncio.Condition()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        """Acquire shared access. Waits while a writer is active or queued."""
        async with self._cond:
            while self._writer_active or self._writers_waiting > 0:
                await self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        """Acquire exclusive access over the whole guarded structure."""
        async with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers > 0:
                    await self._cond.wait()
            except BaseException:
                # Cancelled while queued: let blocked readers back in
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer_active = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer_active = False
                self._cond.notify_all()
