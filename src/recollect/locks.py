"""Per-owner serialization of mutating operations."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .models import OwnerKey


class OwnerLocks:
    """One asyncio.Lock per owner key.

    At most one mutation per owner is in flight; different owners proceed
    concurrently. Locks are not re-entrant. A lock lives only while some
    task holds or waits for it, so the registry does not grow with the
    number of owners ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[OwnerKey, asyncio.Lock] = {}
        self._users: dict[OwnerKey, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, owner: OwnerKey) -> AsyncIterator[None]:
        lock = self._locks.get(owner)
        if lock is None:
            lock = self._locks[owner] = asyncio.Lock()
        self._users[owner] = self._users.get(owner, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[owner] -= 1
            if not self._users[owner]:
                del self._users[owner]
                del self._locks[owner]
