import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable, Protocol, TypeVar

from offline_sync.config import OFFLINE_DB_PATH
from offline_sync.errors import LocalStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# fn receives the current blob (or None) and returns (new_blob, result).
# A new_blob of None deletes the namespace.
Mutator = Callable[[bytes | None], tuple[bytes | None, T]]


class LocalStorage(Protocol):
    """Durable namespace -> blob storage shared by the queue, the mirror and the monitor."""

    def read(self, namespace: str) -> bytes | None: ...

    def write(self, namespace: str, blob: bytes) -> None: ...

    def update(self, namespace: str, fn: Mutator) -> T: ...

    def namespaces(self, prefix: str = "") -> list[str]: ...


class MemoryStorage:
    """Process-local storage, used in tests and for throwaway sessions."""

    def __init__(self):
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def read(self, namespace: str) -> bytes | None:
        with self._lock:
            return self._data.get(namespace)

    def write(self, namespace: str, blob: bytes) -> None:
        with self._lock:
            self._data[namespace] = bytes(blob)

    def update(self, namespace: str, fn: Mutator) -> T:
        with self._lock:
            new_blob, result = fn(self._data.get(namespace))
            if new_blob is None:
                self._data.pop(namespace, None)
            else:
                self._data[namespace] = bytes(new_blob)
            return result

    def namespaces(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(ns for ns in self._data if ns.startswith(prefix))


class SqliteStorage:
    """SQLite-backed storage.

    Every ``update`` runs inside ``BEGIN IMMEDIATE`` so read-modify-write cycles
    from several processes sharing the same file never lose each other's writes.
    """

    def __init__(self, path: str | Path = OFFLINE_DB_PATH, timeout: float = 5.0):
        self.path = str(path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                self.path,
                timeout=timeout,
                isolation_level=None,  # explicit transactions only
                check_same_thread=False,
            )
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS local_store (
                    namespace TEXT PRIMARY KEY,
                    blob BLOB NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            """)
        except sqlite3.Error as e:
            raise LocalStorageError(f"Cannot open local storage at {self.path}: {e}") from e
        logger.info(f"Local storage opened at {self.path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def read(self, namespace: str) -> bytes | None:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT blob FROM local_store WHERE namespace = ?", (namespace,)
                ).fetchone()
            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to read {namespace!r}: {e}") from e
        return bytes(row[0]) if row else None

    def write(self, namespace: str, blob: bytes) -> None:
        self.update(namespace, lambda _current: (blob, None))

    def update(self, namespace: str, fn: Mutator) -> T:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to lock {namespace!r}: {e}") from e
            try:
                row = self._conn.execute(
                    "SELECT blob FROM local_store WHERE namespace = ?", (namespace,)
                ).fetchone()
                new_blob, result = fn(bytes(row[0]) if row else None)
                if new_blob is None:
                    self._conn.execute("DELETE FROM local_store WHERE namespace = ?", (namespace,))
                else:
                    self._conn.execute("""
                        INSERT INTO local_store (namespace, blob, updated_at)
                        VALUES (?, ?, datetime('now'))
                        ON CONFLICT (namespace) DO UPDATE SET
                            blob = excluded.blob,
                            updated_at = excluded.updated_at
                    """, (namespace, sqlite3.Binary(new_blob)))
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise LocalStorageError(f"Failed to update {namespace!r}: {e}") from e
            except BaseException:
                self._rollback()
                raise
            return result

    def namespaces(self, prefix: str = "") -> list[str]:
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT namespace FROM local_store WHERE substr(namespace, 1, ?) = ? ORDER BY namespace",
                    (len(prefix), prefix),
                ).fetchall()
            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to list namespaces: {e}") from e
        return [row[0] for row in rows]

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback of local storage transaction failed")
