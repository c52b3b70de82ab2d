"""Content-hash deduplication.

This module provides:
- KeyedLock: per-key asyncio lock, released entries are dropped
- DedupIndex: lookup of live attachments by content hash, with a
  per-hash critical section for check-then-insert
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from attachsync.server.database import Database
    from attachsync.server.models import AttachmentRecord

logger = logging.getLogger(__name__)


class KeyedLock:
    """A family of asyncio locks addressed by string key.

    Locks are created on first use and removed once no task holds or waits
    for them, so the map only contains keys currently in use.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        """Check whether the lock for ``key`` is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Acquire the lock for ``key`` for the duration of the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]


class DedupIndex:
    """Finds previously uploaded content by SHA-256.

    Callers must hold ``lock(digest)`` across the lookup and the subsequent
    insert so two uploads of the same bytes cannot both transfer.
    """

    def __init__(self, db: Database, locks: KeyedLock | None = None) -> None:
        self._db = db
        self._locks = locks or KeyedLock()

    def find_by_hash(self, digest: str) -> AttachmentRecord | None:
        """Return the live record with this content hash, if any."""
        record = self._db.get_attachment_by_hash(digest)
        if record is not None:
            logger.debug(f"Dedup hit for {digest[:12]}: attachment {record.attachment_id}")
        return record

    def lock(self, digest: str) -> AbstractAsyncContextManager[None]:
        """Per-hash critical section (async context manager)."""
        return self._locks.hold(digest)
