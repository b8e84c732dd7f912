"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). Records are JSON documents; monetary
values are stored as Decimal strings and dates as ISO strings.

Every mutating lending operation runs inside ``atomic()``: the transaction
holds the storage lock until it commits or rolls back, so writers are
serialised and a failure anywhere inside the block leaves no partial rows.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union
from decimal import Decimal
from datetime import date, datetime, timezone
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager

from .exceptions import PersistenceError
from .logging_config import get_logger


T = TypeVar("T")

logger = get_logger("lending.storage")


def to_storable(value: Any) -> Any:
    """Convert Decimal/date/Enum values (recursively) to JSON-friendly values"""
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

    @staticmethod
    def parse_datetime(value: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(value) if value else None

    @staticmethod
    def parse_date(value: Optional[str]) -> Optional[date]:
        return date.fromisoformat(value) if value else None


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Physically delete a record (lending rows are soft-deleted instead)"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
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

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations; nested blocks join the outer one"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    def unit_of_work(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` inside one transaction and return its result"""
        with self.atomic():
            return fn()


class _TransactionalMixin:
    """
    Depth-counted transaction bookkeeping shared by the backends.

    The storage lock is acquired in ``begin_transaction`` and held until the
    outermost block finishes. An inner rollback poisons the outer transaction.
    """

    def _init_transactions(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1
        if self._depth == 1:
            self._rollback_only = False
            self._start()

    def commit(self) -> None:
        try:
            if self._depth == 1:
                if self._rollback_only:
                    self._undo()
                    raise PersistenceError("Transaction was marked rollback-only by a nested block")
                self._finish()
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        try:
            if self._depth == 1:
                self._undo()
            else:
                self._rollback_only = True
        finally:
            self._depth -= 1
            self._lock.release()

    def _start(self) -> None:
        pass

    def _finish(self) -> None:
        pass

    def _undo(self) -> None:
        pass


class InMemoryStorage(_TransactionalMixin, StorageInterface):
    """In-memory storage for tests and demos, with snapshot rollback"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._init_transactions()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            # Round-trip through JSON to prevent external mutation
            self._table(table)[record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(record) for record in self._table(table).values()
                if all(record.get(key) == value for key, value in filters.items())
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        pass

    def _start(self) -> None:
        self._snapshot = copy.deepcopy(self._data)

    def _finish(self) -> None:
        self._snapshot = None

    def _undo(self) -> None:
        if self._snapshot is not None:
            self._data = self._snapshot
        self._snapshot = None


class SQLiteStorage(_TransactionalMixin, StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._init_transactions()
        self._known_tables: set = set()
        try:
            # isolation_level=None: transactions are opened explicitly with BEGIN
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            self._connection.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open SQLite database {self.db_path}: {e}",
                                   {"db_path": self.db_path}) from e

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            logger.error(f"SQLite error: {e}")
            raise PersistenceError(f"Storage failure: {e}", {"statement": sql.split()[0]}) from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
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
        self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON key matching)"""
        with self._lock:
            return [
                record for record in self.load_all(table)
                if all(record.get(key) == value for key, value in filters.items())
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def _start(self) -> None:
        self._execute("BEGIN IMMEDIATE")

    def _finish(self) -> None:
        self._execute("COMMIT")

    def _undo(self) -> None:
        try:
            self._connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"SQLite rollback failed: {e}")
        # DDL issued inside the transaction was undone as well
        self._known_tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage; ``sqlite:///path`` (or
    ``sqlite://:memory:``) gives SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    if database_url.startswith("sqlite://"):
        return SQLiteStorage(database_url[len("sqlite://"):] or ":memory:")
    raise PersistenceError(f"Unsupported database URL '{database_url}'", {"database_url": database_url})
