"""
Tests for storage backends and atomic units of work
"""

import threading

import pytest

from ledgerbank.storage import InMemoryStorage, SQLiteStorage, create_storage
from ledgerbank.exceptions import ConcurrencyConflictError, LedgerBankError


def run_in_thread(fn):
    """Run fn on another thread (outside the caller's unit) and wait for it"""
    errors = []

    def target():
        try:
            fn()
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=target)
    thread.start()
    thread.join(5)
    if errors:
        raise errors[0]


class TestInMemoryStorage:
    """Basic CRUD behaviour of the in-memory backend"""

    def setup_method(self):
        self.storage = InMemoryStorage()

    def test_save_load_exists_delete(self):
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "10.00"})

        assert self.storage.load("accounts", "a1") == {"id": "a1", "balance": "10.00"}
        assert self.storage.exists("accounts", "a1")
        assert not self.storage.exists("accounts", "missing")
        assert self.storage.load("accounts", "missing") is None

        assert self.storage.delete("accounts", "a1")
        assert not self.storage.delete("accounts", "a1")
        assert self.storage.load("accounts", "a1") is None

    def test_loaded_records_are_copies(self):
        self.storage.save("accounts", "a1", {"id": "a1", "tags": ["x"]})
        loaded = self.storage.load("accounts", "a1")
        loaded["tags"].append("y")

        assert self.storage.load("accounts", "a1")["tags"] == ["x"]

    def test_find_count_and_clear(self):
        self.storage.save("loans", "l1", {"id": "l1", "status": "pending"})
        self.storage.save("loans", "l2", {"id": "l2", "status": "active"})
        self.storage.save("loans", "l3", {"id": "l3", "status": "pending"})

        pending = self.storage.find("loans", {"status": "pending"})
        assert sorted(r["id"] for r in pending) == ["l1", "l3"]
        assert self.storage.count("loans") == 3

        self.storage.clear_table("loans")
        assert self.storage.count("loans") == 0


class TestInMemoryAtomicUnits:
    """Buffered writes, rollback and optimistic conflict detection"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "100.00"})

    def test_commit_applies_all_writes(self):
        with self.storage.atomic():
            self.storage.save("accounts", "a1", {"id": "a1", "balance": "40.00"})
            self.storage.save("ledger_entries", "t1", {"id": "t1"})

        assert self.storage.load("accounts", "a1")["balance"] == "40.00"
        assert self.storage.exists("ledger_entries", "t1")
        assert not self.storage.in_transaction

    def test_exception_rolls_back_every_write(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("accounts", "a1", {"id": "a1", "balance": "40.00"})
                self.storage.save("ledger_entries", "t1", {"id": "t1"})
                raise RuntimeError("boom")

        assert self.storage.load("accounts", "a1")["balance"] == "100.00"
        assert not self.storage.exists("ledger_entries", "t1")
        assert not self.storage.in_transaction

    def test_unit_reads_its_own_writes(self):
        with self.storage.atomic():
            self.storage.save("accounts", "a1", {"id": "a1", "balance": "1.00"})
            assert self.storage.load("accounts", "a1")["balance"] == "1.00"
            self.storage.delete("accounts", "a1")
            assert self.storage.load("accounts", "a1") is None
            assert self.storage.find("accounts", {}) == []

    def test_uncommitted_writes_are_invisible_to_other_threads(self):
        seen = []
        with self.storage.atomic():
            self.storage.save("accounts", "a1", {"id": "a1", "balance": "0.00"})
            run_in_thread(lambda: seen.append(self.storage.load("accounts", "a1")["balance"]))

        assert seen == ["100.00"]
        assert self.storage.load("accounts", "a1")["balance"] == "0.00"

    def test_stale_read_conflicts_at_commit(self):
        with pytest.raises(ConcurrencyConflictError):
            with self.storage.atomic():
                self.storage.load("accounts", "a1")
                run_in_thread(lambda: self.storage.save(
                    "accounts", "a1", {"id": "a1", "balance": "5.00"}
                ))
                self.storage.save("accounts", "a1", {"id": "a1", "balance": "40.00"})

        # The concurrent writer won; the loser left nothing behind
        assert self.storage.load("accounts", "a1")["balance"] == "5.00"

    def test_with_atomic_unit_retries_after_conflict(self):
        calls = []

        def work(storage):
            calls.append(1)
            record = storage.load("accounts", "a1")
            if len(calls) == 1:
                run_in_thread(lambda: self.storage.save(
                    "accounts", "a1", {"id": "a1", "balance": "70.00"}
                ))
            record["balance"] = "60.00" if record["balance"] == "70.00" else "bad"
            storage.save("accounts", "a1", record)
            return record["balance"]

        assert self.storage.with_atomic_unit(work, retries=2) == "60.00"
        assert len(calls) == 2
        assert self.storage.load("accounts", "a1")["balance"] == "60.00"

    def test_with_atomic_unit_gives_up_after_retry_budget(self):
        def always_conflicts(storage):
            storage.load("accounts", "a1")
            run_in_thread(lambda: self.storage.save("accounts", "a1", {"id": "a1"}))
            storage.save("accounts", "a1", {"id": "a1", "balance": "1.00"})

        with pytest.raises(ConcurrencyConflictError):
            self.storage.with_atomic_unit(always_conflicts, retries=1)

    def test_nested_units_join_the_outer_unit(self):
        with self.storage.atomic():
            with self.storage.atomic():
                self.storage.save("accounts", "a2", {"id": "a2"})
            run_in_thread(lambda: self.assert_missing("a2"))

        assert self.storage.exists("accounts", "a2")

    def assert_missing(self, record_id):
        assert not self.storage.exists("accounts", record_id)

    def test_failed_nested_unit_dooms_the_outer_unit(self):
        with pytest.raises(LedgerBankError):
            with self.storage.atomic():
                self.storage.save("accounts", "a2", {"id": "a2"})
                try:
                    with self.storage.atomic():
                        raise ValueError("inner failure")
                except ValueError:
                    pass

        assert not self.storage.exists("accounts", "a2")
        assert not self.storage.in_transaction


class TestSQLiteStorage:
    """SQLite persistence, units and lock contention"""

    def test_crud_and_persistence(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        storage = SQLiteStorage(db_path)
        storage.save("accounts", "a1", {"id": "a1", "balance": "10.00"})
        storage.save("accounts", "a2", {"id": "a2", "balance": "20.00"})
        storage.save("accounts", "a1", {"id": "a1", "balance": "15.00"})

        assert storage.count("accounts") == 2
        assert storage.find("accounts", {"balance": "20.00"})[0]["id"] == "a2"
        storage.close()

        reopened = SQLiteStorage(db_path)
        assert reopened.load("accounts", "a1")["balance"] == "15.00"
        assert reopened.delete("accounts", "a2")
        assert not reopened.exists("accounts", "a2")
        reopened.close()

    def test_rollback_discards_writes(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "ledger.db")
        storage.save("accounts", "a1", {"id": "a1", "balance": "10.00"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "a1", {"id": "a1", "balance": "0.00"})
                storage.save("ledger_entries", "t1", {"id": "t1"})
                raise RuntimeError("boom")

        assert storage.load("accounts", "a1")["balance"] == "10.00"
        assert not storage.exists("ledger_entries", "t1")
        storage.close()

    def test_in_memory_database_is_shared_across_threads(self):
        storage = SQLiteStorage(":memory:")
        run_in_thread(lambda: storage.save("accounts", "a1", {"id": "a1"}))

        assert storage.exists("accounts", "a1")
        storage.close()

    def test_write_lock_contention_raises_conflict(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "ledger.db", timeout=0.1)
        storage.save("accounts", "a1", {"id": "a1"})
        holding = threading.Event()
        release = threading.Event()

        def hold_write_lock():
            with storage.atomic():
                storage.save("accounts", "a1", {"id": "a1", "owner": "first"})
                holding.set()
                release.wait(5)

        thread = threading.Thread(target=hold_write_lock)
        thread.start()
        assert holding.wait(5)
        try:
            with pytest.raises(ConcurrencyConflictError):
                with storage.atomic():
                    storage.save("accounts", "a1", {"id": "a1", "owner": "second"})
        finally:
            release.set()
            thread.join(5)

        assert storage.load("accounts", "a1")["owner"] == "first"
        assert not storage.in_transaction
        storage.close()


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'bank.db'}")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(tmp_path / "bank.db")
        storage.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/bank")
