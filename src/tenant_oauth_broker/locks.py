"""Named mutual exclusion keyed by tenant id."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from tenant_oauth_broker.errors import LockTimeoutError

logger = logging.getLogger(__name__)

# Key used while the tenant is still unknown (first connection of a deployment).
FIRST_CONNECTION_KEY = "__first_connection__"


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class TenantLockCoordinator:
    """Per-key asyncio locks with bounded wait.

    Entries are reference counted and dropped when nobody holds or waits on
    them, so the table does not grow with the number of tenants ever seen.
    Only one process is coordinated.
    """

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self._timeout_seconds = timeout_seconds
        self._entries: dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the body of the ``async with`` block.

        Raises LockTimeoutError if the lock is not acquired in time.
        """
        wait = self._timeout_seconds if timeout is None else timeout
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=wait)
            except asyncio.TimeoutError:
                logger.warning("Lock wait for %r exceeded %.1fs", key, wait)
                raise LockTimeoutError(key, wait) from None
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
