"""
Storage Backend Module

Provides the record storage interface consumed by the managers, with an
in-memory implementation (testing) and a SQLite implementation (persistence).
Monetary values are stored as Decimal strings and dates as ISO strings.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
import json
import sqlite3
import threading


def to_storable(value: Any) -> Any:
    """Convert Decimal/date/Enum values (recursively) into JSON-friendly values"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return to_storable(asdict(self))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """A filter value may be a single value or a list/tuple/set of accepted values"""
    for key, expected in filters.items():
        if key not in record:
            return False
        if isinstance(expected, (list, tuple, set)):
            if record[key] not in expected:
                return False
        elif record[key] != expected:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        # key -> (lock, threads holding or waiting for it)
        self._record_locks: Dict[str, Tuple[threading.RLock, int]] = {}
        self._locks_guard = threading.Lock()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records of a table in insertion order"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record, returning whether it existed"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(
        self,
        table: str,
        filters: Dict[str, Any],
        order_by: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Find records matching equality filters, optionally sorted by one field"""
        results = [record for record in self.load_all(table) if _matches(record, filters)]
        if order_by:
            results.sort(key=lambda record: (record.get(order_by) is None, record.get(order_by)))
        return results

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise

    @contextmanager
    def lock(self, table: str, record_id: str) -> Iterator[None]:
        """
        Serialize writers of a single record (re-entrant within a thread).

        Lock order: token and batch locks are taken before ``atomic()``,
        account locks and the audit trail lock only inside it. A lock is
        dropped from the registry once no thread holds or waits for it.
        """
        key = f"{table}:{record_id}"
        with self._locks_guard:
            record_lock, users = self._record_locks.get(key, (None, 0))
            if record_lock is None:
                record_lock = threading.RLock()
            self._record_locks[key] = (record_lock, users + 1)
        try:
            with record_lock:
                yield
        finally:
            with self._locks_guard:
                record_lock, users = self._record_locks[key]
                if users == 1:
                    del self._record_locks[key]
                else:
                    self._record_locks[key] = (record_lock, users - 1)


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, str]] = defaultdict(dict)
        self._snapshot: Optional[Dict[str, Dict[str, str]]] = None
        self._depth = 0
        self._lock = threading.RLock()

    # Records are kept as JSON text so callers never share mutable state
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._data[table][record_id] = json.dumps(data, default=str)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            raw = self._data[table].get(record_id)
            return json.loads(raw) if raw is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(raw) for raw in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._data[table].pop(record_id, None) is not None

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._data[table])

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""

    # Nested atomic() blocks share the outermost snapshot
    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._snapshot is None:
            self._snapshot = {table: dict(rows) for table, rows in self._data.items()}
            self._depth = 0
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._data = defaultdict(dict, self._snapshot)
            self._snapshot = None
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()
        self._depth = 0

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                data TEXT NOT NULL
            )
        """)
        self._tables.add(table)

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            # Upsert keeps the original seq so load_all preserves insertion order
            self._connection.execute(
                f"INSERT INTO {table} (id, data) VALUES (?, ?) "
                f"ON CONFLICT(id) DO UPDATE SET data = excluded.data",
                (record_id, json.dumps(data, default=str))
            )
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            rows = self._connection.execute(f"SELECT data FROM {table} ORDER BY seq").fetchall()
            return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
            return row['n']

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._connection.commit()
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._connection.rollback()
            # Tables created inside the transaction are gone too
            self._tables.clear()
        self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives an InMemoryStorage, ``sqlite:///path.db`` a SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
