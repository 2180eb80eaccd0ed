"""
SQLite Key-Value Backend

DESIGN DECISION: SQLite is the durable on-device backend because:
1. It ships with Python, no server to run
2. Single-row writes are atomic
3. The whole store is one file that is easy to back up

TRADEOFFS:
- sqlite3 calls block, so they run in a worker thread
- Another process holding a write lock makes us wait (we retry briefly)
"""

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from cashbook.services.storage.interface import KeyValueStore, StorageError


def _is_locked(error: BaseException) -> bool:
    return isinstance(error, sqlite3.OperationalError) and "locked" in str(error)


_retry_when_locked = retry(
    retry=retry_if_exception(_is_locked),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    reraise=True,
)


class SQLiteKeyValueStore(KeyValueStore):
    """Key-value pairs in a single ``kv`` table."""

    def __init__(self, path: Union[str, Path]):
        self._path = str(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self._path, check_same_thread=False)
            conn.execute(
                "CREATE TABLE IF NOT EXISTS kv "
                "(key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            conn.commit()
            self._conn = conn
        return self._conn

    @_retry_when_locked
    def _get_sync(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._connect().execute(
                "SELECT value FROM kv WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    @_retry_when_locked
    def _set_sync(self, key: str, value: str) -> None:
        with self._lock:
            conn = self._connect()
            with conn:
                conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )

    @_retry_when_locked
    def _delete_sync(self, key: str) -> None:
        with self._lock:
            conn = self._connect()
            with conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    async def get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set_sync, key, value)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, key)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    async def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
