"""Storage interface shared by the broker stores."""

from __future__ import annotations

from typing import Any, Protocol

Record = dict[str, Any]


class KeyValueStore(Protocol):
    """Async key-value store partitioned into named collections.

    Each record may carry one secondary index value, used by ``find``. Writes
    must be durable by the time the awaitable completes.
    """

    async def get(self, collection: str, key: str) -> Record | None: ...

    async def put(
        self,
        collection: str,
        key: str,
        value: Record,
        *,
        index: str | None = None,
    ) -> None: ...

    async def delete(self, collection: str, key: str) -> bool: ...

    async def find(self, collection: str, index: str) -> list[tuple[str, Record]]: ...

    async def items(self, collection: str) -> list[tuple[str, Record]]: ...

    async def close(self) -> None: ...
