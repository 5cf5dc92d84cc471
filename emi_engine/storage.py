"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Each record is one JSON document keyed by id.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import StoreError


Filters = Dict[str, Any]
Predicate = Callable[[Dict[str, Any]], bool]


def _to_storable(value: Any) -> Any:
    """Convert a value to its JSON-friendly stored form"""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_storable(v) for v in value]
    return value


def matches(record: Dict[str, Any], filters: Optional[Filters] = None,
            where: Optional[Predicate] = None) -> bool:
    """
    Check a stored record against equality filters and an optional predicate.

    A list, tuple or set filter value matches any of its members.
    """
    for key, value in (filters or {}).items():
        if key not in record:
            return False
        if isinstance(value, (list, tuple, set, frozenset)):
            if record[key] not in value:
                return False
        elif record[key] != value:
            return False
    if where is not None and not where(record):
        return False
    return True


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: _to_storable(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    def save_many(self, table: str, records: Dict[str, Dict[str, Any]]) -> None:
        """Save several records as one unit"""
        with self.atomic():
            for record_id, data in records.items():
                self.save(table, record_id, data)

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

    def delete_where(self, table: str, filters: Filters) -> int:
        """Delete every record matching filters, returning how many went"""
        removed = 0
        with self.atomic():
            for record in self.find(table, filters):
                if self.delete(table, record['id']):
                    removed += 1
        return removed

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Filters,
             where: Optional[Predicate] = None) -> List[Dict[str, Any]]:
        """Find records matching filters and predicate"""
        pass

    def count(self, table: str, filters: Optional[Filters] = None,
              where: Optional[Predicate] = None) -> int:
        """Count records in table, optionally only those matching"""
        return len(self.find(table, filters or {}, where))

    @abstractmethod
    def increment(self, table: str, record_id: str, field: str,
                  delta: Union[int, float], floor: Optional[Union[int, float]] = None
                  ) -> Optional[Union[int, float]]:
        """
        Atomically add delta to a numeric field of one record.

        Args:
            table: Table name
            record_id: Record to update
            field: Top-level numeric field (missing counts as 0)
            delta: Amount to add, may be negative
            floor: Lower bound applied to the result

        Returns:
            The new field value, or None if the record does not exist
        """
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Backends with a lock hold it for the whole block, so writes from
        other threads wait instead of joining (and sharing the fate of)
        this transaction.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._depth = 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Any) -> Any:
        # JSON round trip doubles as a deep copy and a serializability check
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Filters,
             where: Optional[Predicate] = None) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record)
                for record in self._data[table].values()
                if matches(record, filters, where)
            ]

    def increment(self, table: str, record_id: str, field: str,
                  delta: Union[int, float], floor: Optional[Union[int, float]] = None
                  ) -> Optional[Union[int, float]]:
        """Add delta to a numeric field under the storage lock"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                return None
            value = (record.get(field) or 0) + delta
            if floor is not None:
                value = max(floor, value)
            record[field] = value
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            return value

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Take the lock until commit/rollback and snapshot the data"""
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._snapshot = self._copy(self._data)
        except Exception:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        try:
            if self._depth > 0:
                self._depth -= 1
                if self._depth == 0:
                    self._snapshot = None
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            if self._depth > 0:
                self._data = self._snapshot
                self._snapshot = None
                self._depth = 0
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return self._copy(self._data)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()
        with self._guard("connect"):
            # Set isolation_level to 'DEFERRED' to enable manual transaction control
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
            self._connection.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _guard(self, operation: str):
        """Translate sqlite3 failures into StoreError"""
        try:
            yield
        except sqlite3.Error as e:
            raise StoreError(f"SQLite {operation} failed on {self.db_path}: {e}") from e

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def _maybe_commit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        if not table.isidentifier():
            raise StoreError(f"Invalid table name: {table!r}")
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._maybe_commit()
        self._tables.add(table)

    def _upsert(self, table: str, record_id: str, data: Dict[str, Any], now: str) -> None:
        data_json = json.dumps(data, default=str)
        # Use INSERT OR REPLACE to handle updates, keeping the original created_at
        self._connection.execute(f"""
            INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?,
                COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                ?)
        """, (record_id, data_json, record_id, now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._guard("save"):
            self._ensure_table(table)
            self._upsert(table, record_id, data, datetime.now(timezone.utc).isoformat())
            self._maybe_commit()

    def save_many(self, table: str, records: Dict[str, Dict[str, Any]]) -> None:
        """Save several records in a single transaction"""
        with self._lock, self.atomic(), self._guard("save_many"):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            for record_id, data in records.items():
                self._upsert(table, record_id, data, now)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._guard("load"):
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
        with self._lock, self._guard("load_all"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, id
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, self._guard("delete"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._guard("exists"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Filters,
             where: Optional[Predicate] = None) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if matches(record, filters, where)]

    def count(self, table: str, filters: Optional[Filters] = None,
              where: Optional[Predicate] = None) -> int:
        """Count records in table"""
        if filters or where:
            return super().count(table, filters, where)
        with self._lock, self._guard("count"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def increment(self, table: str, record_id: str, field: str,
                  delta: Union[int, float], floor: Optional[Union[int, float]] = None
                  ) -> Optional[Union[int, float]]:
        """Add delta to a JSON field with a single UPDATE statement"""
        path = f"$.{field}"
        expression = "COALESCE(json_extract(data, ?), 0) + ?"
        params: List[Any] = [path, delta]
        if floor is not None:
            expression = f"MAX({expression}, ?)"
            params.append(floor)

        now = datetime.now(timezone.utc).isoformat()
        with self._lock, self._guard("increment"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                UPDATE {table}
                SET data = json_set(data, ?, {expression}, '$.updated_at', ?), updated_at = ?
                WHERE id = ?
            """, [path, *params, now, now, record_id])
            if cursor.rowcount == 0:
                return None
            value = self._connection.execute(f"""
                SELECT json_extract(data, ?) AS value FROM {table} WHERE id = ?
            """, (path, record_id)).fetchone()['value']
            self._maybe_commit()
            return value

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._guard("clear_table"):
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the lock until it ends"""
        # The connection is shared, so other threads must not write into it meanwhile
        self._lock.acquire()
        # SQLite with isolation_level='DEFERRED' starts the transaction on first write
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            with self._guard("commit"):
                if self._depth > 0:
                    self._depth -= 1
                    if self._depth == 0:
                        try:
                            self._connection.commit()
                        except sqlite3.Error:
                            self._discard()
                            raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            with self._guard("rollback"):
                if self._depth > 0:
                    self._depth = 0
                    self._discard()
        finally:
            self._lock.release()

    def _discard(self) -> None:
        self._connection.rollback()
        # Tables created inside the transaction are gone too
        self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
