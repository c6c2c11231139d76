"""Tests for queue storage backends."""

import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from globalleaderboards.sync.storage import (
    MemoryStorage,
    SQLiteStorage,
    StorageError,
    open_default_storage,
)


class TestSQLiteStorage:
    """Tests for SQLiteStorage."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "nested" / "store.db"
        self.storage = SQLiteStorage(self.db_path)

    def teardown_method(self):
        self.storage.close()

    def test_creates_parent_directory(self):
        assert self.db_path.exists()

    def test_missing_key_is_empty(self):
        assert self.storage.get("nothing") == []

    def test_set_and_get(self):
        self.storage.set("k", [{"a": 1}, {"b": 2}])

        assert self.storage.get("k") == [{"a": 1}, {"b": 2}]

    def test_set_replaces(self):
        self.storage.set("k", [1])
        self.storage.set("k", [2, 3])

        assert self.storage.get("k") == [2, 3]

    def test_clear(self):
        self.storage.set("k", [1])
        self.storage.set("other", [2])

        self.storage.clear("k")

        assert self.storage.get("k") == []
        assert self.storage.get("other") == [2]

    def test_corrupt_value_raises_storage_error(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.execute(
            "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
            ("bad", "{not json", "2026-01-01"),
        )
        conn.commit()
        conn.close()

        with pytest.raises(StorageError):
            self.storage.get("bad")


class TestMemoryStorage:
    def test_returns_copies(self):
        storage = MemoryStorage()
        value = [{"a": 1}]
        storage.set("k", value)

        value[0]["a"] = 2
        storage.get("k")[0]["a"] = 3

        assert storage.get("k") == [{"a": 1}]

    def test_clear(self):
        storage = MemoryStorage()
        storage.set("k", [1])

        storage.clear("k")

        assert storage.get("k") == []


class TestOpenDefaultStorage:
    def test_uses_sqlite_in_given_path(self):
        db_path = Path(tempfile.mkdtemp()) / "q.db"

        storage = open_default_storage(db_path)

        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_falls_back_to_memory(self):
        with patch(
            "globalleaderboards.sync.storage.SQLiteStorage", side_effect=sqlite3.OperationalError("locked")
        ):
            storage = open_default_storage(Path("/nonexistent/q.db"))

        assert isinstance(storage, MemoryStorage)

    def test_default_path_in_data_dir(self):
        temp_dir = Path(tempfile.mkdtemp())
        with patch("globalleaderboards.sync.storage.Config.get_data_dir", return_value=temp_dir):
            storage = open_default_storage()

        assert storage.db_path == temp_dir / "offline_queue.db"
        storage.close()
