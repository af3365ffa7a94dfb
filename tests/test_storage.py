"""
Tests for storage backends and unit-of-work support
"""

import sqlite3
import threading
from decimal import Decimal
from datetime import datetime, timezone

import pytest

from teller_core.errors import StoreConflict, StoreUnavailable
from teller_core.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


def _record(record_id, **fields):
    now = datetime.now(timezone.utc).isoformat()
    data = {"id": record_id, "created_at": now, "updated_at": now}
    data.update(fields)
    return data


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Each test runs against both local backends"""
    if request.param == "memory":
        store = InMemoryStorage(lock_timeout=1.0)
    else:
        store = SQLiteStorage(tmp_path / "ledger.db", lock_timeout=1.0)
    yield store
    store.close()


class TestBasicOperations:
    """CRUD outside any unit of work"""

    def test_save_load_and_find(self, storage):
        storage.save("accounts", "A1", _record("A1", account_number="1200000001", balance="10.00"))
        storage.save("accounts", "A2", _record("A2", account_number="1200000002", balance="0"))

        assert storage.load("accounts", "A1")["balance"] == "10.00"
        assert storage.load("accounts", "missing") is None
        assert storage.exists("accounts", "A2")
        assert storage.count("accounts") == 2

        found = storage.find("accounts", {"account_number": "1200000002"})
        assert [r["id"] for r in found] == ["A2"]
        assert storage.find("accounts", {"account_number": "nope"}) == []

    def test_delete_and_clear(self, storage):
        storage.save("accounts", "A1", _record("A1"))
        storage.save("accounts", "A2", _record("A2"))

        assert storage.delete("accounts", "A1")
        assert not storage.delete("accounts", "A1")
        assert storage.count("accounts") == 1

        storage.clear_table("accounts")
        assert storage.load_all("accounts") == []

    def test_loaded_records_are_copies(self, storage):
        storage.save("accounts", "A1", _record("A1", balance="5"))
        loaded = storage.load("accounts", "A1")
        loaded["balance"] = "999"
        assert storage.load("accounts", "A1")["balance"] == "5"


class TestUnitOfWork:
    """atomic(), nesting, locks and conditional adjustment"""

    def test_commit_publishes_writes(self, storage):
        with storage.atomic():
            storage.save("accounts", "A1", _record("A1", balance="1"))
            storage.save("transactions", "T1", _record("T1", amount="1"))
            assert storage.in_transaction()

        assert not storage.in_transaction()
        assert storage.exists("accounts", "A1")
        assert storage.exists("transactions", "T1")

    def test_exception_rolls_back_everything(self, storage):
        storage.save("accounts", "A1", _record("A1", balance="100"))

        with pytest.raises(ValueError):
            with storage.atomic():
                storage.adjust_decimal("accounts", "A1", "balance", Decimal("-40"))
                storage.save("transactions", "T1", _record("T1", amount="40"))
                raise ValueError("boom")

        assert storage.load("accounts", "A1")["balance"] == "100"
        assert not storage.exists("transactions", "T1")
        assert not storage.in_transaction()

    def test_nested_atomic_joins_outer_unit(self, storage):
        with storage.atomic():
            storage.save("accounts", "A1", _record("A1"))
            with storage.atomic():
                storage.save("accounts", "A2", _record("A2"))
            assert storage.in_transaction()

        assert storage.count("accounts") == 2

    def test_nested_failure_dooms_outer_unit(self, storage):
        with pytest.raises(StoreConflict):
            with storage.atomic():
                storage.save("accounts", "A1", _record("A1"))
                try:
                    with storage.atomic():
                        raise KeyError("inner")
                except KeyError:
                    pass

        assert not storage.exists("accounts", "A1")

    def test_adjust_decimal_respects_floor(self, storage):
        storage.save("accounts", "A1", _record("A1", balance="50.00"))

        with storage.atomic():
            assert storage.adjust_decimal("accounts", "A1", "balance", Decimal("-20.00")) == Decimal("30.00")
            assert storage.adjust_decimal("accounts", "A1", "balance", Decimal("-30.01")) is None
            assert storage.adjust_decimal("accounts", "A1", "balance", Decimal("5")) == Decimal("35.00")

        assert Decimal(storage.load("accounts", "A1")["balance"]) == Decimal("35.00")

    def test_adjust_decimal_missing_row(self, storage):
        with pytest.raises(KeyError):
            with storage.atomic():
                storage.adjust_decimal("accounts", "ghost", "balance", Decimal("1"))

    def test_primitives_refuse_to_run_outside_unit(self, storage):
        storage.save("accounts", "A1", _record("A1", balance="1"))
        with pytest.raises(RuntimeError):
            storage.adjust_decimal("accounts", "A1", "balance", Decimal("1"))
        with pytest.raises(RuntimeError):
            storage.lock_rows("accounts", ["A1"])

    def test_staged_writes_invisible_to_other_threads(self, storage):
        storage.save("accounts", "A1", _record("A1", balance="10"))
        staged = threading.Event()
        release = threading.Event()
        seen = {}

        def writer():
            with storage.atomic():
                storage.adjust_decimal("accounts", "A1", "balance", Decimal("5"))
                staged.set()
                release.wait(timeout=5)

        def reader():
            staged.wait(timeout=5)
            # SQLite readers wait for the writer; memory readers see committed state
            seen["balance"] = storage.load("accounts", "A1")["balance"]

        w = threading.Thread(target=writer)
        r = threading.Thread(target=reader)
        w.start()
        r.start()
        r.join(timeout=0.3)
        if r.is_alive():
            release.set()
            r.join(timeout=5)
            assert Decimal(seen["balance"]) == Decimal("15")
        else:
            assert Decimal(seen["balance"]) == Decimal("10")
            release.set()
        w.join(timeout=5)

        assert Decimal(storage.load("accounts", "A1")["balance"]) == Decimal("15")

    def test_snapshot_reads_several_tables(self, storage):
        storage.save("accounts", "A1", _record("A1"))
        storage.save("transactions", "T1", _record("T1"))

        snapshot = storage.snapshot(["accounts", "transactions", "empty"])
        assert len(snapshot["accounts"]) == 1
        assert len(snapshot["transactions"]) == 1
        assert snapshot["empty"] == []


class TestInMemoryRowLocks:
    """Row-level lock behavior specific to the in-memory backend"""

    def setup_method(self):
        self.storage = InMemoryStorage(lock_timeout=0.2)
        self.storage.save("accounts", "A1", _record("A1", balance="0"))
        self.storage.save("accounts", "A2", _record("A2", balance="0"))

    def test_lock_wait_timeout_raises_conflict(self):
        holding = threading.Event()
        release = threading.Event()

        def holder():
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["A1"])
                holding.set()
                release.wait(timeout=5)

        t = threading.Thread(target=holder)
        t.start()
        holding.wait(timeout=5)
        try:
            with pytest.raises(StoreConflict):
                with self.storage.atomic():
                    self.storage.lock_rows("accounts", ["A1"])
        finally:
            release.set()
            t.join(timeout=5)

    def test_disjoint_rows_do_not_contend(self):
        holding = threading.Event()
        release = threading.Event()

        def holder():
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["A1"])
                holding.set()
                release.wait(timeout=5)

        t = threading.Thread(target=holder)
        t.start()
        holding.wait(timeout=5)
        try:
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["A2"])
                self.storage.adjust_decimal("accounts", "A2", "balance", Decimal("3"))
        finally:
            release.set()
            t.join(timeout=5)

        assert self.storage.load("accounts", "A2")["balance"] == "3"


class TestSQLiteSpecifics:

    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "persist.db"
        store = SQLiteStorage(path)
        with store.atomic():
            store.save("accounts", "A1", _record("A1", balance="12.50"))
        store.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("accounts", "A1")["balance"] == "12.50"
        reopened.close()

    def test_closed_store_is_unavailable(self, tmp_path):
        store = SQLiteStorage(tmp_path / "closed.db")
        store.close()
        with pytest.raises(StoreUnavailable):
            store.load("accounts", "A1")

    def test_table_created_in_failed_unit_is_recreated(self, tmp_path):
        store = SQLiteStorage(tmp_path / "ddl.db")
        with pytest.raises(RuntimeError):
            with store.atomic():
                assert store.load("accounts", "missing") is None
                raise RuntimeError("boom")

        # The CREATE TABLE was rolled back with the unit
        store.save("accounts", "A1", _record("A1", balance="1.00"))
        assert store.load("accounts", "A1")["balance"] == "1.00"
        with store.atomic():
            store.adjust_decimal("accounts", "A1", "balance", Decimal("2"))
        assert store.load("accounts", "A1")["balance"] == "3.00"
        store.close()

    def test_failed_commit_leaves_connection_usable(self, tmp_path):
        store = SQLiteStorage(tmp_path / "commit.db")
        store.save("accounts", "A1", _record("A1", balance="5"))
        store._connection = FailingCommitConnection(store._connection)

        with pytest.raises(StoreUnavailable):
            with store.atomic():
                store.save("accounts", "A2", _record("A2", balance="7"))

        assert not store.in_transaction()
        assert store.load("accounts", "A2") is None
        with store.atomic():
            store.save("accounts", "A3", _record("A3", balance="9"))
        assert store.load("accounts", "A3")["balance"] == "9"
        store.close()


class FailingCommitConnection:
    """sqlite3 connection whose first COMMIT fails like a disk error"""

    def __init__(self, connection):
        self._connection = connection
        self.failed = False

    def execute(self, sql, *args):
        if sql == "COMMIT" and not self.failed:
            self.failed = True
            raise sqlite3.OperationalError("disk I/O error")
        return self._connection.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._connection, name)


class TestStorageFactory:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        store = create_storage(f"sqlite:///{tmp_path / 'factory.db'}")
        assert isinstance(store, SQLiteStorage)
        store.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("mysql://localhost/db")


class TestStorageRecord:

    def test_round_trip_converts_timestamps_and_decimals(self):
        from dataclasses import dataclass

        @dataclass
        class Sample(StorageRecord):
            amount: Decimal

        now = datetime.now(timezone.utc)
        data = Sample(id="S1", created_at=now, updated_at=now, amount=Decimal("1.10")).to_dict()
        assert data["amount"] == "1.10"
        assert data["created_at"] == now.isoformat()

        restored = Sample.from_dict(dict(data))
        assert restored.created_at == now
