"""Per-site read-write locks.

Listing, version history and export take the shared side; create, delete,
deploy and rollback take the exclusive side.  Waiting writers block new
readers so a steady stream of reads cannot starve a deploy.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from contextlib import AbstractAsyncContextManager


class ReadWriteLock:
    """Writer-preferring asyncio read-write lock."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
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
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
                # Readers held back by this writer must re-check if it gave up.
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class SiteLocks:
    """Lazily created ``ReadWriteLock`` per site name."""

    def __init__(self) -> None:
        self._locks: dict[str, ReadWriteLock] = {}

    def get(self, site: str) -> ReadWriteLock:
        lock = self._locks.get(site)
        if lock is None:
            lock = self._locks[site] = ReadWriteLock()
        return lock

    def read(self, site: str) -> AbstractAsyncContextManager[None]:
        return self.get(site).read()

    def write(self, site: str) -> AbstractAsyncContextManager[None]:
        return self.get(site).write()
