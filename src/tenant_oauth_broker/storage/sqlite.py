"""SQLite-backed durable store for sessions and broker tokens."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Mapping, Sequence

from tenant_oauth_broker.errors import StorageUnavailableError
from tenant_oauth_broker.storage.base import Record

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]


class SqliteStore:
    """Collections are rows of one ``records`` table.

    Every write commits before returning. Blocking sqlite calls run in a
    worker thread so the event loop is never stalled by disk I/O.
    """

    def __init__(self, path: str, wal: bool = True) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False, timeout=5.0)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                record_key TEXT NOT NULL,
                index_value TEXT,
                payload TEXT NOT NULL,
                updated_at REAL NOT NULL,
                PRIMARY KEY (collection, record_key)
            );

            CREATE INDEX IF NOT EXISTS idx_records_collection_index
                ON records(collection, index_value);
            """
        )
        self._conn.commit()

    def _execute(self, query: str, params: _SqlParams) -> int:
        with self._lock:
            if self._closed:
                raise StorageUnavailableError("SQLite store is closed")
            try:
                cursor = self._conn.execute(query, params)
                self._conn.commit()
            except sqlite3.OperationalError as exc:
                self._conn.rollback()
                raise StorageUnavailableError(str(exc)) from exc
            return cursor.rowcount

    def _fetch_all(self, query: str, params: _SqlParams) -> list[sqlite3.Row]:
        with self._lock:
            if self._closed:
                raise StorageUnavailableError("SQLite store is closed")
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.OperationalError as exc:
                raise StorageUnavailableError(str(exc)) from exc

    @staticmethod
    def _rows_to_records(rows: list[sqlite3.Row]) -> list[tuple[str, Record]]:
        return [(row["record_key"], json.loads(row["payload"])) for row in rows]

    async def get(self, collection: str, key: str) -> Record | None:
        rows = await asyncio.to_thread(
            self._fetch_all,
            "SELECT record_key, payload FROM records WHERE collection = ? AND record_key = ?",
            (collection, key),
        )
        if not rows:
            return None
        return json.loads(rows[0]["payload"])

    async def put(
        self,
        collection: str,
        key: str,
        value: Record,
        *,
        index: str | None = None,
    ) -> None:
        payload = json.dumps(value, separators=(",", ":"), sort_keys=True)
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO records (collection, record_key, index_value, payload, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(collection, record_key) DO UPDATE SET
                index_value = excluded.index_value,
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (collection, key, index, payload, time.time()),
        )

    async def delete(self, collection: str, key: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM records WHERE collection = ? AND record_key = ?",
            (collection, key),
        )
        return deleted > 0

    async def find(self, collection: str, index: str) -> list[tuple[str, Record]]:
        rows = await asyncio.to_thread(
            self._fetch_all,
            (
                "SELECT record_key, payload FROM records "
                "WHERE collection = ? AND index_value = ? ORDER BY updated_at"
            ),
            (collection, index),
        )
        return self._rows_to_records(rows)

    async def items(self, collection: str) -> list[tuple[str, Record]]:
        rows = await asyncio.to_thread(
            self._fetch_all,
            "SELECT record_key, payload FROM records WHERE collection = ? ORDER BY updated_at",
            (collection,),
        )
        return self._rows_to_records(rows)

    async def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
