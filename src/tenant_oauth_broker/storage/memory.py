"""In-process store used for short-lived records and tests."""

from __future__ import annotations

import asyncio
import copy

from tenant_oauth_broker.storage.base import Record


class MemoryStore:
    def __init__(self) -> None:
        self._data: dict[str, dict[str, tuple[str | None, Record]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, key: str) -> Record | None:
        async with self._lock:
            entry = self._data.get(collection, {}).get(key)
            if entry is None:
                return None
            return copy.deepcopy(entry[1])

    async def put(
        self,
        collection: str,
        key: str,
        value: Record,
        *,
        index: str | None = None,
    ) -> None:
        async with self._lock:
            self._data.setdefault(collection, {})[key] = (index, copy.deepcopy(value))

    async def delete(self, collection: str, key: str) -> bool:
        async with self._lock:
            return self._data.get(collection, {}).pop(key, None) is not None

    async def find(self, collection: str, index: str) -> list[tuple[str, Record]]:
        async with self._lock:
            return [
                (key, copy.deepcopy(value))
                for key, (index_value, value) in self._data.get(collection, {}).items()
                if index_value == index
            ]

    async def items(self, collection: str) -> list[tuple[str, Record]]:
        async with self._lock:
            return [
                (key, copy.deepcopy(value))
                for key, (_, value) in self._data.get(collection, {}).items()
            ]

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()
