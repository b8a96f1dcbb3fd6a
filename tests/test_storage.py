"""
Tests for storage backends and atomic blocks
"""

import pytest
import tempfile
from pathlib import Path

from interbank.storage import InMemoryStorage, SQLiteStorage, create_storage


record = {"id": "r1", "balance": "100.00", "status": "pending"}


class TestStorageBackends:
    """Basic CRUD against both backends"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request):
        if request.param == "memory":
            backend = InMemoryStorage()
            yield backend
        else:
            with tempfile.TemporaryDirectory() as temp_dir:
                backend = SQLiteStorage(Path(temp_dir) / "test.db")
                yield backend
                backend.close()

    def test_save_load_find(self, storage):
        storage.save("accounts", "r1", record)
        storage.save("accounts", "r2", {"id": "r2", "balance": "5.00", "status": "completed"})

        assert storage.load("accounts", "r1") == record
        assert storage.load("accounts", "missing") is None
        assert storage.exists("accounts", "r2")
        assert storage.count("accounts") == 2

        found = storage.find("accounts", {"status": "completed"})
        assert [row["id"] for row in found] == ["r2"]

        assert storage.delete("accounts", "r2")
        assert not storage.exists("accounts", "r2")

    def test_atomic_commits(self, storage):
        with storage.atomic():
            storage.save("accounts", "r1", record)
        assert storage.load("accounts", "r1") == record

    def test_atomic_rolls_back_on_error(self, storage):
        storage.save("accounts", "r1", record)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "r1", {**record, "balance": "0.00"})
                storage.save("accounts", "r2", record)
                raise RuntimeError("boom")

        assert storage.load("accounts", "r1")["balance"] == "100.00"
        assert not storage.exists("accounts", "r2")

    def test_nested_atomic_joins_outer_block(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("accounts", "r1", record)
                raise RuntimeError("outer failure")

        assert not storage.exists("accounts", "r1")

    def test_table_created_inside_rolled_back_block(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh_table", "x", record)
                raise RuntimeError("boom")

        storage.save("fresh_table", "y", record)
        assert storage.load("fresh_table", "y") == record


class TestSQLitePersistence:

    def test_data_survives_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "bank.db"
            storage = SQLiteStorage(db_path)
            storage.save("signing_keys", "k1", {"key_id": "k1", "active": True})
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("signing_keys", "k1") == {"key_id": "k1", "active": True}
            reopened.close()


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_memory_url(self):
        storage = create_storage("sqlite://:memory:")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_sqlite_file_url(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/bank.db")
            assert isinstance(storage, SQLiteStorage)
            storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/bank")
