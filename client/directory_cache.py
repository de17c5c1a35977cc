"""
Client-side cache of counterparty public keys.

Concurrent lookups for the same identity share one in-flight directory call.
Entries are immutable snapshots; whichever lookup finishes last wins.
There is no server push invalidation: a stale key makes envelope
verification fail closed, and callers that need the current key pass
fresh=True.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from common.models import DirectoryCacheEntry, utcnow
from crypto.primitives import fingerprint

logger = logging.getLogger(__name__)


class DirectoryCache:
    """Coalescing public key cache keyed by identity id"""

    def __init__(self, fetch: Callable[[str], Awaitable[bytes]],
                 max_age: Optional[timedelta] = None,
                 clock: Callable[[], datetime] = utcnow):
        """
        Args:
            fetch: Coroutine function performing the directory lookup
            max_age: Refetch entries older than this (None keeps them until evicted)
            clock: Time source for fetched_at
        """
        self._fetch = fetch
        self.max_age = max_age
        self.clock = clock
        self._entries: Dict[str, DirectoryCacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._generation = 0

    def get(self, identity_id: str) -> Optional[DirectoryCacheEntry]:
        entry = self._entries.get(identity_id)
        if entry and self.max_age is not None and self.clock() - entry.fetched_at > self.max_age:
            return None
        return entry

    def put(self, identity_id: str, public_key: bytes) -> DirectoryCacheEntry:
        entry = DirectoryCacheEntry(identity_id=identity_id, public_key=public_key, fetched_at=self.clock())
        self._entries[identity_id] = entry
        return entry

    def invalidate(self, identity_id: str) -> None:
        self._entries.pop(identity_id, None)

    def clear(self) -> None:
        """Drop every entry and abandon in-flight lookups"""
        self._generation += 1
        self._entries.clear()
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()

    async def resolve(self, identity_id: str, fresh: bool = False) -> bytes:
        """
        Return the public key for identity_id.

        Args:
            identity_id: Identity to look up
            fresh: Bypass cached entries (an in-flight lookup is still shared)

        Raises:
            Whatever the fetch function raises (NotFound, Timeout, ...)
        """
        if not fresh:
            entry = self.get(identity_id)
            if entry:
                return entry.public_key

        task = self._inflight.get(identity_id)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(identity_id, self._generation))
            self._inflight[identity_id] = task
            task.add_done_callback(lambda t: self._finished(identity_id, t))
        # Shielded so one caller cancelling does not abort the shared lookup
        return await asyncio.shield(task)

    async def _fetch_and_store(self, identity_id: str, generation: int) -> bytes:
        public_key = await self._fetch(identity_id)
        if generation == self._generation:
            previous = self._entries.get(identity_id)
            self.put(identity_id, public_key)
            if previous and previous.public_key != public_key:
                logger.info("Key for %s changed to %s", identity_id, fingerprint(public_key))
        return public_key

    def _finished(self, identity_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(identity_id) is task:
            del self._inflight[identity_id]
        if not task.cancelled():
            # Mark the exception retrieved; waiters get it through the shield
            task.exception()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity_id: str) -> bool:
        return identity_id in self._entries
