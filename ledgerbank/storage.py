"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values are stored as Decimal
strings inside JSON documents.

Both backends provide an atomic unit of work through ``atomic()`` /
``with_atomic_unit()``. Units are scoped to the calling thread, so many
requests can run units in parallel; overlapping units are serialized by
conflict detection (in-memory) or the database write lock (SQLite), and the
loser raises ConcurrencyConflictError.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
import random
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager, nullcontext

from .exceptions import ConcurrencyConflictError, LedgerBankError
from .logging_config import get_logger

T = TypeVar("T")

logger = get_logger("ledgerbank.storage")

RETRY_BACKOFF = 0.002
RETRY_BACKOFF_CAP = 0.05


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) the calling thread's unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Leave the unit of work; the outermost level commits"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Abort the unit of work"""
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside a unit of work"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def with_atomic_unit(self, fn: Callable[['StorageInterface'], T], retries: int = 0) -> T:
        """
        Run ``fn(storage)`` inside an atomic unit, committing all-or-nothing.

        A unit that loses a concurrency race is re-run from scratch up to
        ``retries`` more times. Nested calls join the enclosing unit and are
        never retried on their own; the outermost caller owns the retry.
        """
        if self.in_transaction:
            return fn(self)

        attempt = 0
        while True:
            try:
                with self.atomic():
                    result = fn(self)
                return result
            except ConcurrencyConflictError:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.debug("Atomic unit conflicted, retrying (attempt %d of %d)", attempt, retries)
                # Jittered exponential back-off so racing units stop colliding
                time.sleep(random.uniform(0, min(RETRY_BACKOFF_CAP, RETRY_BACKOFF * 2 ** attempt)))


class _UnitOfWork:
    """Per-thread buffered writes plus the versions observed by reads"""

    def __init__(self):
        self.depth = 0
        self.rollback_only = False
        self.read_versions: Dict[Tuple[str, str], int] = {}
        self.table_versions: Dict[str, int] = {}
        self.writes: Dict[str, Dict[str, Optional[Dict[str, Any]]]] = {}


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing and single-process use.

    Units of work buffer their writes and remember the version of every
    record (and every table scanned) they read. Commit validates those
    versions under a short lock and applies the buffer; a changed version
    means another unit won the race and raises ConcurrencyConflictError.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[Tuple[str, str], int] = {}
        self._table_versions: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _unit(self) -> Optional[_UnitOfWork]:
        return getattr(self._local, 'unit', None)

    @property
    def in_transaction(self) -> bool:
        return self._unit() is not None

    def _bump(self, table: str, record_id: str) -> None:
        key = (table, record_id)
        self._versions[key] = self._versions.get(key, 0) + 1
        self._table_versions[table] = self._table_versions.get(table, 0) + 1

    def _visible_records(self, table: str) -> List[Dict[str, Any]]:
        """Committed records overlaid with the current unit's writes"""
        unit = self._unit()
        with self._lock:
            committed = dict(self._data.get(table, {}))
            if unit is not None:
                unit.table_versions.setdefault(table, self._table_versions.get(table, 0))
        if unit is not None:
            for record_id, record in unit.writes.get(table, {}).items():
                if record is None:
                    committed.pop(record_id, None)
                else:
                    committed[record_id] = record
        return [_copy(record) for record in committed.values()]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = _copy(data)
        unit = self._unit()
        if unit is not None:
            unit.writes.setdefault(table, {})[record_id] = record
            return
        with self._lock:
            self._data.setdefault(table, {})[record_id] = record
            self._bump(table, record_id)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        unit = self._unit()
        if unit is not None and record_id in unit.writes.get(table, {}):
            record = unit.writes[table][record_id]
            return _copy(record) if record is not None else None

        with self._lock:
            record = self._data.get(table, {}).get(record_id)
            if unit is not None:
                unit.read_versions.setdefault(
                    (table, record_id), self._versions.get((table, record_id), 0)
                )
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self._visible_records(table)

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = self.load(table, record_id) is not None
        if not existed:
            return False
        unit = self._unit()
        if unit is not None:
            unit.writes.setdefault(table, {})[record_id] = None
            return True
        with self._lock:
            self._data.get(table, {}).pop(record_id, None)
            self._bump(table, record_id)
        return True

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            record for record in self._visible_records(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._visible_records(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        if self.in_transaction:
            raise LedgerBankError("clear_table is not allowed inside an atomic unit")
        with self._lock:
            for record_id in list(self._data.get(table, {})):
                self._bump(table, record_id)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        unit = self._unit()
        if unit is None:
            unit = _UnitOfWork()
            self._local.unit = unit
        unit.depth += 1

    def commit(self) -> None:
        unit = self._unit()
        if unit is None:
            return
        unit.depth -= 1
        if unit.depth > 0:
            return

        self._local.unit = None
        if unit.rollback_only:
            raise LedgerBankError("Atomic unit was rolled back by a nested failure")

        with self._lock:
            for key, version in unit.read_versions.items():
                if self._versions.get(key, 0) != version:
                    raise ConcurrencyConflictError(
                        f"Record {key[0]}/{key[1]} was modified by a concurrent request"
                    )
            for table, version in unit.table_versions.items():
                if self._table_versions.get(table, 0) != version:
                    raise ConcurrencyConflictError(
                        f"Table {table} was modified by a concurrent request"
                    )

            for table, records in unit.writes.items():
                table_data = self._data.setdefault(table, {})
                for record_id, record in records.items():
                    if record is None:
                        table_data.pop(record_id, None)
                    else:
                        table_data[record_id] = record
                    self._bump(table, record_id)

    def rollback(self) -> None:
        unit = self._unit()
        if unit is None:
            return
        unit.depth -= 1
        if unit.depth > 0:
            unit.rollback_only = True
            return
        self._local.unit = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Each thread gets its own connection. A unit of work opens with
    ``BEGIN IMMEDIATE`` so the database write lock serializes overlapping
    units; a unit that cannot obtain the lock within the busy timeout raises
    ConcurrencyConflictError and leaves no trace.

    An in-memory database lives on a single connection. Threads take turns
    on it under ``_db_lock``, and a unit holds that lock from BEGIN until
    COMMIT or ROLLBACK.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._local = threading.local()
        self._lock = threading.RLock()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False
        self._shared = self.db_path == ":memory:"
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._db_lock = threading.RLock()

        connection = self._conn()
        if self._shared:
            self._shared_connection = connection
        else:
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute("PRAGMA synchronous = NORMAL")

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self.db_path, timeout=self.timeout,
            isolation_level=None, check_same_thread=False
        )
        connection.row_factory = sqlite3.Row
        with self._lock:
            self._connections.append(connection)
        return connection

    def _conn(self) -> sqlite3.Connection:
        if self._closed:
            raise LedgerBankError("Storage is closed")
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            connection = self._shared_connection or self._connect()
            self._local.connection = connection
            self._local.depth = 0
            self._local.rollback_only = False
        return connection

    def _guard(self):
        return self._db_lock if self._shared else nullcontext()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._guard():
                return self._conn().execute(sql, params)
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise ConcurrencyConflictError(f"Database is busy: {e}") from e
            raise

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        """Run a SELECT and fetch every row before releasing the connection"""
        with self._guard():
            return self._execute(sql, params).fetchall()

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, 'depth', 0) > 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        self._ensure_table(table)

        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)

        self._execute(f"""
            INSERT INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
        """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        self._ensure_table(table)
        rows = self._query(f"""
            SELECT data FROM {table} WHERE id = ?
        """, (record_id,))
        if rows:
            return json.loads(rows[0]['data'])
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        rows = self._query(f"""
            SELECT data FROM {table} ORDER BY created_at, rowid
        """)
        return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        self._ensure_table(table)
        cursor = self._execute(f"""
            DELETE FROM {table} WHERE id = ?
        """, (record_id,))
        return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        rows = self._query(f"""
            SELECT 1 FROM {table} WHERE id = ? LIMIT 1
        """, (record_id,))
        return bool(rows)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        rows = self._query(f"""
            SELECT COUNT(*) as count FROM {table}
        """)
        return rows[0]['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        self._ensure_table(table)
        self._execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._conn()
        if self._local.depth == 0:
            if self._shared and not self._db_lock.acquire(timeout=self.timeout):
                raise ConcurrencyConflictError("Timed out waiting for the database")
            try:
                self._execute("BEGIN IMMEDIATE")
            except BaseException:
                self._release()
                raise
            self._local.rollback_only = False
        self._local.depth += 1

    def _release(self) -> None:
        if self._shared:
            self._db_lock.release()

    def commit(self) -> None:
        if not self.in_transaction:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            return

        try:
            if self._local.rollback_only:
                self._execute("ROLLBACK")
                raise LedgerBankError("Atomic unit was rolled back by a nested failure")
            try:
                self._execute("COMMIT")
            except ConcurrencyConflictError:
                self._execute("ROLLBACK")
                raise
        finally:
            self._release()

    def rollback(self) -> None:
        if not self.in_transaction:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            self._local.rollback_only = True
            return
        try:
            self._execute("ROLLBACK")
        finally:
            self._release()

    def close(self) -> None:
        """Close every connection opened by this storage"""
        with self._lock:
            for connection in self._connections:
                connection.close()
            self._connections = []
            self._closed = True


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://`` and ``sqlite:///<path>`` (``sqlite://`` or
    ``sqlite:///:memory:`` for an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
