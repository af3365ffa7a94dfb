"""
Storage Backend Module

Provides the abstract storage interface the ledger consumes and three
implementations: in-memory (testing), SQLite (single-file persistence) and
PostgreSQL (production). All monetary values are stored as Decimal strings.

A unit of work (``atomic()``) is per thread. Inside it, ``lock_rows`` takes
row locks in sorted id order and ``adjust_decimal`` applies a delta to a
numeric field only if the result stays at or above a floor. Writes made
inside a unit become visible to other threads only on commit.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StoreConflict, StoreError, StoreUnavailable
from .logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _copy(data: Any) -> Any:
    """Deep copy through JSON so callers never share mutable state with the store"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


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
        """Open (or join) the calling thread's unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's unit of work at the outermost level"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard the calling thread's unit of work"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """True when the calling thread has an open unit of work"""
        pass

    @abstractmethod
    def lock_rows(self, table: str, record_ids: Iterable[str]) -> None:
        """Lock rows for the rest of the current unit of work"""
        pass

    @abstractmethod
    def snapshot(self, tables: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Read several tables as of a single committed point in time"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def adjust_decimal(self, table: str, record_id: str, field: str,
                       delta: Decimal, minimum: Decimal = Decimal('0')) -> Optional[Decimal]:
        """
        Add ``delta`` to a Decimal field if the result stays >= ``minimum``.

        Must run inside ``atomic()``. The row is locked first, so the check
        and the write see the same committed value.

        Returns:
            New field value, or None when the condition failed (nothing written)

        Raises:
            KeyError: If the row does not exist
        """
        self._require_transaction("adjust_decimal")
        self.lock_rows(table, [record_id])
        record = self.load(table, record_id)
        if record is None:
            raise KeyError(f"{table}/{record_id}")

        new_value = Decimal(str(record.get(field) or '0')) + delta
        if new_value < minimum:
            return None

        record[field] = str(new_value)
        record['updated_at'] = datetime.now(timezone.utc).isoformat()
        self.save(table, record_id, record)
        return new_value

    def _require_transaction(self, operation: str) -> None:
        if not self.in_transaction():
            raise RuntimeError(f"{operation} must be called inside storage.atomic()")


class _UnitOfWork:
    """Per-thread state of an in-memory unit of work"""

    def __init__(self):
        self.depth = 0
        self.rollback_only = False
        self.writes: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self.held: Dict[Tuple[str, str], threading.Lock] = {}


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: float = 5.0):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._row_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._local = threading.local()
        self.lock_timeout = lock_timeout

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _unit(self) -> Optional[_UnitOfWork]:
        return getattr(self._local, 'unit', None)

    def _visible(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's staged writes"""
        with self._lock:
            self._ensure_table(table)
            rows = dict(self._data[table])
        unit = self._unit()
        if unit:
            for (staged_table, record_id), record in unit.writes.items():
                if staged_table != table:
                    continue
                if record is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = record
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        payload = _copy(data)
        unit = self._unit()
        if unit:
            unit.writes[(table, record_id)] = payload
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = payload

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._visible(table).get(record_id)
        return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._visible(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = record_id in self._visible(table)
        unit = self._unit()
        if unit:
            unit.writes[(table, record_id)] = None
            return existed
        with self._lock:
            self._ensure_table(table)
            self._data[table].pop(record_id, None)
        return existed

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._visible(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _copy(record) for record in self._visible(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._visible(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        unit = self._unit()
        if unit:
            for record_id in self._visible(table):
                unit.writes[(table, record_id)] = None
            return
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Open or join this thread's unit of work"""
        unit = self._unit()
        if unit is None:
            unit = _UnitOfWork()
            self._local.unit = unit
        unit.depth += 1

    def commit(self) -> None:
        """Publish staged writes when the outermost unit commits"""
        unit = self._unit()
        if unit is None:
            return
        unit.depth -= 1
        if unit.depth > 0:
            return
        try:
            if unit.rollback_only:
                raise StoreConflict("Unit of work was rolled back by a nested failure")
            with self._lock:
                for (table, record_id), record in unit.writes.items():
                    self._ensure_table(table)
                    if record is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = record
        finally:
            self._finish(unit)

    def rollback(self) -> None:
        """Discard staged writes"""
        unit = self._unit()
        if unit is None:
            return
        unit.depth -= 1
        unit.writes.clear()
        unit.rollback_only = True
        if unit.depth <= 0:
            self._finish(unit)

    def _finish(self, unit: _UnitOfWork) -> None:
        for lock in reversed(list(unit.held.values())):
            lock.release()
        unit.held.clear()
        self._local.unit = None

    def in_transaction(self) -> bool:
        return self._unit() is not None

    def lock_rows(self, table: str, record_ids: Iterable[str]) -> None:
        """Acquire per-row locks in sorted order, waiting up to lock_timeout"""
        self._require_transaction("lock_rows")
        unit = self._unit()
        deadline = time.monotonic() + self.lock_timeout
        for key in sorted({(table, record_id) for record_id in record_ids if record_id}):
            if key in unit.held:
                continue
            with self._lock:
                lock = self._row_locks.setdefault(key, threading.Lock())
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not lock.acquire(timeout=remaining):
                raise StoreConflict(f"Timed out waiting for lock on {table}/{key[1]}")
            unit.held[key] = lock

    def snapshot(self, tables: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Copy several tables under one acquisition of the store lock"""
        with self._lock:
            return {table: self.load_all(table) for table in tables}


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    A unit of work is a ``BEGIN IMMEDIATE`` transaction held on the shared
    connection; SQLite admits one writer per database, so row locks are
    implied by the database write lock.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        # isolation_level=None: transactions are issued explicitly below
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=lock_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._local = threading.local()
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock, self._translated():
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _translated(self):
        """Map sqlite3 failures onto the store error taxonomy"""
        if self._connection is None:
            raise StoreUnavailable("SQLite storage is closed")
        try:
            yield
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise StoreConflict(str(e)) from e
            raise StoreUnavailable(str(e)) from e
        except sqlite3.DatabaseError as e:
            raise StoreUnavailable(str(e)) from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        # Create index on timestamps for better query performance
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        if self._depth() > 0:
            # DDL inside a unit is undone by ROLLBACK; cache it only on commit
            self._local.pending_tables.add(table)
        else:
            self._tables.add(table)

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        cursor = self._connection.execute(f"""
            SELECT data FROM {table} ORDER BY created_at, rowid
        """)
        return [json.loads(row['data']) for row in cursor.fetchall()]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._translated():
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._translated():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, self._translated():
            return self._rows(table)

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, self._translated():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._translated():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock, self._translated():
            return [record for record in self._rows(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, self._translated():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._translated():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def _depth(self) -> int:
        return getattr(self._local, 'depth', 0)

    def begin_transaction(self) -> None:
        """Start (or join) an immediate write transaction"""
        if self._depth() == 0:
            if not self._lock.acquire(timeout=self.lock_timeout):
                raise StoreConflict("Timed out waiting for the SQLite write transaction")
            try:
                with self._translated():
                    self._connection.execute("BEGIN IMMEDIATE")
            except BaseException:
                self._lock.release()
                raise
            self._local.rollback_only = False
            self._local.pending_tables = set()
        self._local.depth = self._depth() + 1

    def _abandon(self) -> None:
        """Roll back after a failed COMMIT, keeping the original error"""
        self._local.pending_tables = set()
        if self._connection is None or not self._connection.in_transaction:
            return
        try:
            self._connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Rollback after failed commit did not complete: {e}")

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth() == 0:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            return
        try:
            if self._local.rollback_only:
                self._local.pending_tables = set()
                with self._translated():
                    self._connection.execute("ROLLBACK")
                raise StoreConflict("Unit of work was rolled back by a nested failure")
            try:
                with self._translated():
                    self._connection.execute("COMMIT")
            except StoreError:
                self._abandon()
                raise
            self._tables.update(self._local.pending_tables)
            self._local.pending_tables = set()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth() == 0:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            self._local.rollback_only = True
            return
        self._local.pending_tables = set()
        try:
            with self._translated():
                self._connection.execute("ROLLBACK")
        finally:
            self._lock.release()

    def in_transaction(self) -> bool:
        return self._depth() > 0

    def lock_rows(self, table: str, record_ids: Iterable[str]) -> None:
        """Rows are covered by the database write lock taken at BEGIN IMMEDIATE"""
        self._require_transaction("lock_rows")

    def snapshot(self, tables: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Read tables while holding the connection, so no unit commits in between"""
        with self._lock, self._translated():
            return {table: self._rows(table) for table in tables}

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


# PostgreSQL error codes that mean "another transaction got there first"
_PG_CONFLICT_CODES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
}


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with row-level locking

    Each thread's unit of work holds one pooled connection. Rows are locked
    with ``SELECT ... FOR UPDATE`` under ``lock_timeout``; balance
    adjustment is a single conditional UPDATE.
    """

    def __init__(self, connection_string: str, pool_size: int = 5, lock_timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.lock_timeout = lock_timeout
        self._local = threading.local()
        self._tables = set()
        self._tables_lock = threading.Lock()
        with self._translated():
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                1, pool_size, connection_string,
                cursor_factory=self.extras.RealDictCursor
            )

    @contextmanager
    def _translated(self):
        """Map psycopg2 failures onto the store error taxonomy"""
        try:
            yield
        except self.psycopg2.Error as e:
            if getattr(e, 'pgcode', None) in _PG_CONFLICT_CODES:
                raise StoreConflict(str(e).strip()) from e
            raise StoreUnavailable(str(e).strip()) from e

    @contextmanager
    def _cursor(self):
        """Cursor on the unit's connection, or on a short-lived autocommitted one"""
        unit_conn = getattr(self._local, 'connection', None)
        if unit_conn is not None:
            with self._translated():
                cursor = unit_conn.cursor()
                try:
                    yield cursor
                finally:
                    cursor.close()
            return

        with self._translated():
            conn = self._pool.getconn()
            try:
                cursor = conn.cursor()
                try:
                    yield cursor
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
                finally:
                    cursor.close()
            finally:
                self._pool.putconn(conn)

    def _ensure_table(self, cursor, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        if getattr(self._local, 'connection', None) is not None:
            # DDL inside a unit is undone by rollback; cache it only on commit
            self._local.pending_tables.add(table)
            return
        with self._tables_lock:
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            now = datetime.now(timezone.utc)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at, id")
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            conditions = ["TRUE"]
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("data -> %s = %s::jsonb")
                params.extend([key, json.dumps(value, default=str)])
            cursor.execute(f"""
                SELECT data FROM {table}
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at, id
            """, params)
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Check out a connection for this thread's unit of work"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            with self._translated():
                conn = self._pool.getconn()
                try:
                    with conn.cursor() as cursor:
                        cursor.execute(
                            "SET LOCAL lock_timeout = %s",
                            (f"{int(self.lock_timeout * 1000)}ms",)
                        )
                except BaseException:
                    conn.rollback()
                    self._pool.putconn(conn)
                    raise
            self._local.connection = conn
            self._local.rollback_only = False
            self._local.pending_tables = set()
        self._local.depth = depth + 1

    def commit(self) -> None:
        """Commit current transaction"""
        if getattr(self._local, 'depth', 0) == 0:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            return
        conn = self._local.connection
        try:
            with self._translated():
                if self._local.rollback_only:
                    conn.rollback()
                    raise StoreConflict("Unit of work was rolled back by a nested failure")
                try:
                    conn.commit()
                except self.psycopg2.Error:
                    conn.rollback()
                    raise
            with self._tables_lock:
                self._tables.update(self._local.pending_tables)
        finally:
            self._release_unit(conn)

    def rollback(self) -> None:
        """Rollback current transaction"""
        if getattr(self._local, 'depth', 0) == 0:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            self._local.rollback_only = True
            return
        conn = self._local.connection
        try:
            with self._translated():
                conn.rollback()
        finally:
            self._release_unit(conn)

    def _release_unit(self, conn) -> None:
        self._local.connection = None
        self._local.pending_tables = set()
        self._pool.putconn(conn)

    def in_transaction(self) -> bool:
        return getattr(self._local, 'depth', 0) > 0

    def lock_rows(self, table: str, record_ids: Iterable[str]) -> None:
        """SELECT ... FOR UPDATE in id order"""
        self._require_transaction("lock_rows")
        ids = sorted({record_id for record_id in record_ids if record_id})
        if not ids:
            return
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(
                f"SELECT id FROM {table} WHERE id = ANY(%s) ORDER BY id FOR UPDATE",
                (ids,)
            )

    def adjust_decimal(self, table: str, record_id: str, field: str,
                       delta: Decimal, minimum: Decimal = Decimal('0')) -> Optional[Decimal]:
        """Single conditional UPDATE; the row lock is taken by the UPDATE itself"""
        self._require_transaction("adjust_decimal")
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                UPDATE {table}
                SET data = jsonb_set(
                        jsonb_set(data, %s, to_jsonb((COALESCE((data ->> %s)::numeric, 0) + %s)::text)),
                        '{{updated_at}}', to_jsonb(%s::text)),
                    updated_at = %s
                WHERE id = %s AND COALESCE((data ->> %s)::numeric, 0) + %s >= %s
                RETURNING data ->> %s AS value
            """, ([field], field, delta, now.isoformat(), now,
                  record_id, field, delta, minimum, field))
            row = cursor.fetchone()
            if row is not None:
                return Decimal(row['value'])
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s", (record_id,))
            if cursor.fetchone() is None:
                raise KeyError(f"{table}/{record_id}")
            return None

    def snapshot(self, tables: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Read tables inside one REPEATABLE READ, READ ONLY transaction"""
        with self._translated():
            conn = self._pool.getconn()
            try:
                conn.set_session(isolation_level='REPEATABLE READ', readonly=True)
                result = {}
                with conn.cursor() as cursor:
                    for table in tables:
                        self._ensure_table(cursor, table)
                        cursor.execute(f"SELECT data FROM {table} ORDER BY created_at, id")
                        result[table] = [dict(row['data']) for row in cursor.fetchall()]
                conn.commit()
                return result
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.set_session(isolation_level='READ COMMITTED', readonly=False)
                self._pool.putconn(conn)

    def close(self) -> None:
        """Close all pooled connections"""
        if self._pool:
            self._pool.closeall()
            self._pool = None


def create_storage(database_url: str, lock_timeout: float = 5.0, pool_size: int = 5) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite:///:memory:`` and ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, pool_size=pool_size, lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
