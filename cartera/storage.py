"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends support atomic blocks and a versioned compare-and-save used
for optimistic concurrency on invoices.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, TypeVar, Union
from datetime import datetime, timezone
import sqlite3
import json
import logging
import threading
from dataclasses import dataclass, asdict
from decimal import Decimal
from pathlib import Path
from contextlib import contextmanager

from .exceptions import StaleRecordError, ConcurrencyConflictError


logger = logging.getLogger("cartera.storage")

T = TypeVar("T")


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


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    # Deep copy through JSON so callers never share state with the store
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
    def compare_and_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> bool:
        """
        Save a record only if its stored ``version`` field still equals
        ``expected_version`` (None meaning the record must not exist yet).

        Returns:
            True if saved, False if the stored version differs
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
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Writes inside ``atomic()`` are buffered per thread and applied on commit,
    so a rolled back block leaves no trace. Version expectations recorded by
    ``compare_and_save`` are re-checked against committed data at commit time.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _tx(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, 'tx', None)

    def _pending(self, table: str) -> Dict[str, Optional[Dict[str, Any]]]:
        tx = self._tx()
        if tx is None:
            return {}
        return tx['writes'].get(table, {})

    def _visible(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's pending writes"""
        self._ensure_table(table)
        rows = dict(self._data[table])
        for record_id, data in self._pending(table).items():
            if data is None:
                rows.pop(record_id, None)
            else:
                rows[record_id] = data
        return rows

    def _write(self, table: str, record_id: str, data: Optional[Dict[str, Any]]) -> None:
        tx = self._tx()
        if tx is not None:
            tx['writes'].setdefault(table, {})[record_id] = data
            return
        self._ensure_table(table)
        if data is None:
            self._data[table].pop(record_id, None)
        else:
            self._data[table][record_id] = data

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._write(table, record_id, _copy(data))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._visible(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [_copy(record) for record in self._visible(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            if record_id not in self._visible(table):
                return False
            self._write(table, record_id, None)
            return True

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            return record_id in self._visible(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            return [
                _copy(record) for record in self._visible(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._visible(table))

    def compare_and_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> bool:
        with self._lock:
            current = self._visible(table).get(record_id)
            current_version = current.get('version') if current is not None else None
            if current_version != expected_version:
                return False
            tx = self._tx()
            # Only the first write of a record in a transaction is checked against committed data
            if tx is not None and record_id not in tx['writes'].get(table, {}):
                tx['expectations'].append((table, record_id, expected_version))
            self._write(table, record_id, _copy(data))
            return True

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        tx = self._tx()
        if tx is None:
            self._local.tx = {'writes': {}, 'expectations': [], 'depth': 1}
        else:
            tx['depth'] += 1

    def commit(self) -> None:
        tx = self._tx()
        if tx is None:
            return
        tx['depth'] -= 1
        if tx['depth'] > 0:
            return

        self._local.tx = None
        with self._lock:
            for table, record_id, expected in tx['expectations']:
                self._ensure_table(table)
                current = self._data[table].get(record_id)
                current_version = current.get('version') if current is not None else None
                if current_version != expected:
                    raise StaleRecordError(
                        f"Record {table}/{record_id} changed before commit",
                        table=table, record_id=record_id
                    )
            for table, rows in tx['writes'].items():
                self._ensure_table(table)
                for record_id, data in rows.items():
                    if data is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = data

    def rollback(self) -> None:
        self._local.tx = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    ``atomic()`` holds the connection lock for the whole block so writes from
    other threads never interleave with an open transaction.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED isolation gives manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
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
            # A table created inside a transaction disappears if it rolls back
            if not self._in_transaction:
                self._connection.commit()
                self._tables.add(table)

    def _raw(self, table: str, record_id: str) -> Optional[str]:
        cursor = self._connection.execute(f"""
            SELECT data FROM {table} WHERE id = ?
        """, (record_id,))
        row = cursor.fetchone()
        return row['data'] if row else None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Keep the original created_at on updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

            self._commit_unless_in_transaction()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            raw = self._raw(table, record_id)
            return json.loads(raw) if raw is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def compare_and_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> bool:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            raw = self._raw(table, record_id)

            if raw is None:
                if expected_version is not None:
                    return False
                try:
                    self._connection.execute(f"""
                        INSERT INTO {table} (id, data, created_at, updated_at)
                        VALUES (?, ?, ?, ?)
                    """, (record_id, data_json, now, now))
                except sqlite3.IntegrityError:
                    return False
                self._commit_unless_in_transaction()
                return True

            if json.loads(raw).get('version') != expected_version:
                return False

            # Matching on the previous payload makes the update a true CAS
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND data = ?
            """, (data_json, now, record_id, raw))
            self._commit_unless_in_transaction()
            return cursor.rowcount == 1

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # isolation_level='DEFERRED' opens the transaction on first write
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._in_transaction:
                # Nested block joins the outer transaction
                yield
                return
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def retry_on_stale(operation: Callable[[], T], max_attempts: int, description: str) -> T:
    """
    Run ``operation`` until it completes without a StaleRecordError.

    Each attempt must re-read whatever it depends on; ``operation`` is
    expected to open its own atomic block.

    Raises:
        ConcurrencyConflictError: After ``max_attempts`` stale attempts
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except StaleRecordError as e:
            logger.warning("Stale snapshot during %s (attempt %d/%d): %s",
                           description, attempt, max_attempts, e.message)
    raise ConcurrencyConflictError(
        f"Gave up on {description} after {max_attempts} conflicting attempts",
        attempts=max_attempts
    )


def create_storage(backend: str, database_path: str = ":memory:") -> StorageInterface:
    """Build the storage backend named in configuration"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unsupported storage backend: {backend}")
