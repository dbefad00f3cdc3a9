"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from microloan.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage, to_storable
)


# Test data
test_data = {
    "id": "entry_1",
    "owner_id": "token_1",
    "sequence": 1,
    "status": "pending",
    "installment_amount": "366.67"
}


class Colour(Enum):
    RED = "red"


class TestStorageBackends:
    """Test CRUD operations on both backends"""

    def check_basic_operations(self, storage):
        # Save and load
        storage.save("schedule_entries", "entry_1", test_data)
        assert storage.load("schedule_entries", "entry_1") == test_data
        assert storage.load("schedule_entries", "missing") is None

        # Exists
        assert storage.exists("schedule_entries", "entry_1")
        assert not storage.exists("schedule_entries", "missing")

        # Upsert keeps insertion order
        storage.save("schedule_entries", "entry_2", {"id": "entry_2", "owner_id": "token_1", "sequence": 2})
        storage.save("schedule_entries", "entry_1", dict(test_data, status="paid"))
        assert [r["id"] for r in storage.load_all("schedule_entries")] == ["entry_1", "entry_2"]
        assert storage.load("schedule_entries", "entry_1")["status"] == "paid"

        # Count and delete
        assert storage.count("schedule_entries") == 2
        assert storage.delete("schedule_entries", "entry_1")
        assert not storage.delete("schedule_entries", "entry_1")
        assert storage.count("schedule_entries") == 1

    def test_in_memory_storage_basic_operations(self):
        """Test basic CRUD operations with InMemoryStorage"""
        self.check_basic_operations(InMemoryStorage())

    def test_sqlite_storage_basic_operations(self):
        """Test basic CRUD operations with SQLiteStorage on disk"""
        with tempfile.TemporaryDirectory() as tmp_dir:
            db_path = os.path.join(tmp_dir, "microloan.db")
            storage = SQLiteStorage(db_path)
            self.check_basic_operations(storage)
            storage.close()

            # Data survives reopening
            reopened = SQLiteStorage(db_path)
            assert reopened.count("schedule_entries") == 1
            reopened.close()

    def test_in_memory_records_are_copies(self):
        """Test callers never share mutable state with the store"""
        storage = InMemoryStorage()
        storage.save("tokens", "t1", {"id": "t1", "token_ids": []})

        loaded = storage.load("tokens", "t1")
        loaded["token_ids"].append("x")

        assert storage.load("tokens", "t1")["token_ids"] == []


class TestFind:
    """Test filtered queries"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        for sequence, status in [(3, "pending"), (1, "paid"), (2, "overdue")]:
            self.storage.save("schedule_entries", f"t1_{sequence}", {
                "id": f"t1_{sequence}", "owner_id": "t1", "sequence": sequence, "status": status
            })
        self.storage.save("schedule_entries", "t2_1", {
            "id": "t2_1", "owner_id": "t2", "sequence": 1, "status": "pending"
        })

    def test_equality_filter(self):
        """Test filtering on one field"""
        assert len(self.storage.find("schedule_entries", {"owner_id": "t1"})) == 3

    def test_list_filter(self):
        """Test a list of accepted values"""
        results = self.storage.find("schedule_entries", {"status": ["pending", "overdue"]})
        assert sorted(r["id"] for r in results) == ["t1_2", "t1_3", "t2_1"]

    def test_order_by(self):
        """Test sorting by a field"""
        results = self.storage.find("schedule_entries", {"owner_id": "t1"}, order_by="sequence")
        assert [r["sequence"] for r in results] == [1, 2, 3]

    def test_missing_field_never_matches(self):
        """Test records without the filtered field are excluded"""
        assert self.storage.find("schedule_entries", {"batch_id": None}) == []


class TestTransactions:
    """Test atomic() on both backends"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request):
        storage = InMemoryStorage() if request.param == "memory" else SQLiteStorage()
        yield storage
        storage.close()

    def test_commit(self, storage):
        """Test writes inside atomic() are kept"""
        with storage.atomic():
            storage.save("tokens", "t1", {"id": "t1"})
            storage.save("tokens", "t2", {"id": "t2"})

        assert storage.count("tokens") == 2

    def test_rollback(self, storage):
        """Test an exception discards every write of the block"""
        storage.save("tokens", "t0", {"id": "t0", "status": "active"})

        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("tokens", "t1", {"id": "t1"})
                storage.save("tokens", "t0", {"id": "t0", "status": "closed"})
                storage.delete("tokens", "t0")
                raise ValueError("abort")

        assert storage.count("tokens") == 1
        assert storage.load("tokens", "t0")["status"] == "active"

    def test_nested_rollback(self, storage):
        """Test an inner failure that escapes rolls back the outer block too"""
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("tokens", "t1", {"id": "t1"})
                with storage.atomic():
                    storage.save("tokens", "t2", {"id": "t2"})
                    raise ValueError("abort")

        assert storage.count("tokens") == 0

    def test_nested_commit(self, storage):
        """Test nested blocks commit with the outermost one"""
        with storage.atomic():
            with storage.atomic():
                storage.save("tokens", "t1", {"id": "t1"})
            storage.save("tokens", "t2", {"id": "t2"})

        assert storage.count("tokens") == 2

    def test_record_lock_is_reentrant(self, storage):
        """Test the same thread can take a record lock twice"""
        with storage.lock("tokens", "t1"):
            with storage.lock("tokens", "t1"):
                storage.save("tokens", "t1", {"id": "t1"})

        assert storage.exists("tokens", "t1")

    def test_record_locks_are_released(self, storage):
        """Test record locks are forgotten once nobody holds them"""
        for i in range(100):
            with storage.lock("tokens", f"t{i}"):
                pass

        assert storage._record_locks == {}

    def test_record_lock_shared_by_waiters(self, storage):
        """Test a waiting thread gets the same lock and the entry is dropped afterwards"""
        order = []

        def waiter():
            with storage.lock("tokens", "t1"):
                order.append("waiter")

        with storage.lock("tokens", "t1"):
            thread = threading.Thread(target=waiter, daemon=True)
            thread.start()
            thread.join(0.2)
            assert thread.is_alive()
            order.append("holder")
        thread.join(10)

        assert not thread.is_alive()
        assert order == ["holder", "waiter"]
        assert storage._record_locks == {}


class TestHelpers:
    """Test serialization helpers and the storage factory"""

    def test_to_storable(self):
        """Test Decimal, date, datetime and Enum values are converted recursively"""
        moment = datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)
        value = {"amount": Decimal('10.50'), "dates": [date(2024, 1, 2)], "at": moment, "colour": Colour.RED}

        assert to_storable(value) == {
            "amount": "10.50",
            "dates": ["2024-01-02"],
            "at": "2024-01-01T09:30:00+00:00",
            "colour": "red"
        }

    def test_storage_record_serialization(self):
        """Test the default to_dict of a record"""
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        record = StorageRecord(id="r1", created_at=now, updated_at=now)

        assert record.to_dict() == {
            "id": "r1",
            "created_at": "2024-01-01T00:00:00+00:00",
            "updated_at": "2024-01-01T00:00:00+00:00"
        }

    def test_create_storage(self):
        """Test URLs map to backends"""
        assert isinstance(create_storage("memory://"), InMemoryStorage)

        storage = create_storage("sqlite:///")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_create_storage_unsupported(self):
        """Test unknown URLs are refused"""
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/microloan")
