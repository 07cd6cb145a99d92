"""Retry wrapper for transient storage failures."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenant_oauth_broker.errors import StorageUnavailableError
from tenant_oauth_broker.storage.base import KeyValueStore, Record

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryingStore:
    """Wraps a store and retries StorageUnavailableError with exponential backoff.

    After ``max_retries`` retries the last error is re-raised.
    """

    def __init__(
        self,
        inner: KeyValueStore,
        max_retries: int = 3,
        base_delay: float = 0.5,
    ) -> None:
        self._inner = inner
        self._max_retries = max_retries
        self._base_delay = base_delay

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await fn()
            except StorageUnavailableError as exc:
                if attempt >= self._max_retries:
                    logger.error(
                        "Storage %s failed after %d attempt(s): %s",
                        operation,
                        attempt + 1,
                        exc,
                    )
                    raise
                backoff = self._base_delay * (2**attempt)
                logger.warning(
                    "Storage %s failed (%s); retrying in %.2fs", operation, exc, backoff
                )
                await asyncio.sleep(backoff)
                attempt += 1

    async def get(self, collection: str, key: str) -> Record | None:
        return await self._call("get", lambda: self._inner.get(collection, key))

    async def put(
        self,
        collection: str,
        key: str,
        value: Record,
        *,
        index: str | None = None,
    ) -> None:
        await self._call("put", lambda: self._inner.put(collection, key, value, index=index))

    async def delete(self, collection: str, key: str) -> bool:
        return await self._call("delete", lambda: self._inner.delete(collection, key))

    async def find(self, collection: str, index: str) -> list[tuple[str, Record]]:
        return await self._call("find", lambda: self._inner.find(collection, index))

    async def items(self, collection: str) -> list[tuple[str, Record]]:
        return await self._call("items", lambda: self._inner.items(collection))

    async def close(self) -> None:
        await self._inner.close()
