"""
Tests for storage backends and atomic units
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from confidential_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


# Test data
test_data = {
    "id": "record_001",
    "owner": "ab" * 32,
    "nonce": 3,
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


def _exercise_crud(storage):
    storage.save("test_table", "record_1", test_data)
    assert storage.load("test_table", "record_1") == test_data

    assert storage.exists("test_table", "record_1")
    assert not storage.exists("test_table", "non_existent")

    storage.save("test_table", "record_2", {"id": "record_2", "nonce": 4})
    assert len(storage.load_all("test_table")) == 2

    results = storage.find("test_table", {"nonce": 3})
    assert len(results) == 1
    assert results[0]["id"] == "record_001"

    assert storage.count("test_table") == 2

    assert storage.delete("test_table", "record_1")
    assert not storage.delete("test_table", "record_1")
    assert storage.count("test_table") == 1

    storage.clear_table("test_table")
    assert storage.count("test_table") == 0


class TestInMemoryStorage:
    """Test the in-memory backend"""

    def setup_method(self):
        self.storage = InMemoryStorage()

    def test_basic_operations(self):
        """Test basic CRUD operations"""
        _exercise_crud(self.storage)

    def test_returns_copies(self):
        """Test that callers cannot mutate stored records"""
        self.storage.save("t", "r", {"id": "r", "values": [1, 2]})
        loaded = self.storage.load("t", "r")
        loaded["values"].append(3)
        assert self.storage.load("t", "r")["values"] == [1, 2]

    def test_atomic_commit(self):
        with self.storage.atomic():
            self.storage.save("t", "r", {"id": "r"})
        assert self.storage.exists("t", "r")

    def test_atomic_rollback(self):
        """Test that a failed unit restores every table"""
        self.storage.save("t", "kept", {"id": "kept", "n": 1})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("t", "kept", {"id": "kept", "n": 2})
                self.storage.save("t", "new", {"id": "new"})
                self.storage.delete("other", "missing")
                raise RuntimeError("boom")

        assert self.storage.load("t", "kept") == {"id": "kept", "n": 1}
        assert not self.storage.exists("t", "new")

    def test_nested_atomic_joins_outer_unit(self):
        """Test that an inner block's writes roll back with the outer block"""
        with pytest.raises(ValueError):
            with self.storage.atomic():
                with self.storage.atomic():
                    self.storage.save("t", "inner", {"id": "inner"})
                raise ValueError("outer failure")

        assert not self.storage.exists("t", "inner")

    def test_rollback_restores_deletes_and_cleared_tables(self):
        """Test that deleted and cleared records come back and new tables vanish"""
        self.storage.save("t", "a", {"id": "a"})
        self.storage.save("t", "b", {"id": "b"})
        self.storage.save("log", "e1", {"id": "e1"})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.delete("t", "a")
                self.storage.save("t", "b", {"id": "b", "changed": True})
                self.storage.save("t", "b", {"id": "b", "changed": "twice"})
                self.storage.clear_table("log")
                self.storage.save("fresh", "x", {"id": "x"})
                raise RuntimeError("boom")

        assert self.storage.get_all_data() == {
            "t": {"a": {"id": "a"}, "b": {"id": "b"}},
            "log": {"e1": {"id": "e1"}}
        }

    def test_transaction_tracks_only_touched_keys(self):
        """Test that opening a unit does not copy existing records"""
        for i in range(100):
            self.storage.save("audit_events", f"e{i}", {"id": f"e{i}"})

        self.storage.begin_transaction()
        assert self.storage._undo == {}
        self.storage.save("accounts", "acct", {"id": "acct"})
        self.storage.load("audit_events", "e5")
        assert list(self.storage._undo) == [("accounts", "acct")]
        self.storage.commit()

        assert self.storage._undo is None
        assert self.storage.count("audit_events") == 100
        assert self.storage.exists("accounts", "acct")

    def test_get_all_data(self):
        self.storage.save("t", "r", {"id": "r"})
        assert self.storage.get_all_data() == {"t": {"r": {"id": "r"}}}


class TestSQLiteStorage:
    """Test the SQLite backend"""

    def test_basic_operations(self):
        """Test basic CRUD operations with a file database"""
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            _exercise_crud(storage)
            storage.close()

    def test_persistence(self):
        """Test that records survive reopening the database"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"

            storage = SQLiteStorage(db_path)
            storage.save("accounts", "a1", {"id": "a1", "nonce": 5})
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("accounts", "a1") == {"id": "a1", "nonce": 5}
            reopened.close()

    def test_atomic_rollback(self):
        storage = SQLiteStorage(":memory:")
        storage.save("t", "kept", {"id": "kept", "n": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "kept", {"id": "kept", "n": 2})
                storage.save("t", "new", {"id": "new"})
                raise RuntimeError("boom")

        assert storage.load("t", "kept") == {"id": "kept", "n": 1}
        assert not storage.exists("t", "new")
        storage.close()

    def test_atomic_commit(self):
        storage = SQLiteStorage(":memory:")
        with storage.atomic():
            storage.save("t", "a", {"id": "a"})
            storage.save("t", "b", {"id": "b"})
        assert storage.count("t") == 2
        storage.close()

    def test_load_all_keeps_insertion_order(self):
        storage = SQLiteStorage(":memory:")
        for i in range(5):
            storage.save("t", f"r{i}", {"id": f"r{i}"})
        assert [r["id"] for r in storage.load_all("t")] == ["r0", "r1", "r2", "r3", "r4"]
        storage.close()


class TestStorageRecord:
    """Test the record base class"""

    def test_to_dict_encodes_bytes_and_dates(self):
        now = datetime.now(timezone.utc)
        record = StorageRecord(id="r1", created_at=now, updated_at=now)
        data = record.to_dict()
        assert data["created_at"] == now.isoformat()

        restored = StorageRecord.from_dict(data)
        assert restored == record


class TestCreateStorage:
    """Test backend selection"""

    def test_memory(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite(self):
        storage = create_storage("sqlite", ":memory:")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            create_storage("postgres")
