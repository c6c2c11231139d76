"""Key-value persistence for the offline queue."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..config import Config

__all__ = ["SQLiteStorage", "MemoryStorage", "StorageError", "open_default_storage"]

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Persistence layer failure."""

    pass


class SQLiteStorage:
    """SQLite-backed key-value store holding JSON lists."""

    def __init__(self, db_path: Path):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file (created if missing)
        """
        self.db_path = db_path
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            self._local.connection = sqlite3.connect(str(self.db_path))
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def get(self, key: str) -> list:
        """Return the list stored under ``key`` (empty if missing)."""
        with self._cursor() as cursor:
            cursor.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cursor.fetchone()
        if not row:
            return []
        try:
            value = json.loads(row[0])
        except ValueError as e:
            raise StorageError(f"Corrupt value for {key}: {e}") from e
        return value if isinstance(value, list) else []

    def set(self, key: str, value: list) -> None:
        """Replace the list stored under ``key``."""
        now = datetime.now(timezone.utc).isoformat()
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), now),
            )

    def clear(self, key: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def close(self) -> None:
        """Close the database connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection


class MemoryStorage:
    """In-process store used when no durable storage is available."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> list:
        raw = self._data.get(key)
        return json.loads(raw) if raw else []

    def set(self, key: str, value: list) -> None:
        # Stored serialized, every get returns a fresh copy
        self._data[key] = json.dumps(value)

    def clear(self, key: str) -> None:
        self._data.pop(key, None)

    def close(self) -> None:
        pass


def open_default_storage(db_path: Optional[Path] = None):
    """Open the SQLite store in the user data dir, falling back to memory."""
    if db_path is None:
        db_path = Config.get_data_dir() / "offline_queue.db"
    try:
        return SQLiteStorage(db_path)
    except (OSError, sqlite3.Error, StorageError) as e:
        logger.warning(f"Durable queue storage unavailable ({e}), using in-memory queue")
        return MemoryStorage()
