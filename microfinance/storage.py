"""
Document Storage Module

Abstract JSON-document store with an in-memory implementation (tests) and a
SQLite implementation (persistence). Documents are plain dicts; monetary
values are stored as Decimal strings.

Both backends support nested transactions through `atomic()` and a locked
read-modify-write through `modify()`, which is how accumulating fields such
as an installment's amount paid are updated without lost updates.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from decimal import Decimal
from pathlib import Path
from contextlib import contextmanager


Mutator = Callable[[Dict[str, Any]], Dict[str, Any]]


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

    def touch(self) -> None:
        """Bump updated_at to now"""
        self.updated_at = datetime.now(timezone.utc)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a document"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a document, or None"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all documents of a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a document; False if it did not exist"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find documents whose top-level keys equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def modify(self, table: str, record_id: str, mutator: Mutator) -> Optional[Dict[str, Any]]:
        """
        Atomically load a document, apply `mutator` and save the result.

        Returns the saved document, or None when the document does not exist
        (the mutator is not called). No other writer can interleave between
        the read and the write.
        """
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

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
        """Context manager for atomic operations; nests safely"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage for tests.

    Transactions snapshot the whole store on entry and restore it on
    rollback; the store lock is held for the duration of a transaction.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[str] = None
        self._rollback_only = False

    @staticmethod
    def _copy(value: Any) -> Any:
        return json.loads(json.dumps(value, default=str))

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def modify(self, table: str, record_id: str, mutator: Mutator) -> Optional[Dict[str, Any]]:
        with self._lock:
            current = self._table(table).get(record_id)
            if current is None:
                return None
            updated = mutator(self._copy(current))
            self._table(table)[record_id] = self._copy(updated)
            return self._copy(updated)

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = json.dumps(self._data, default=str)
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            if self._rollback_only:
                self._restore()
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self._restore()
            self._snapshot = None
        else:
            self._rollback_only = True
        self._lock.release()

    def _restore(self) -> None:
        if self._snapshot is not None:
            self._data = json.loads(self._snapshot)
        self._rollback_only = False


class SQLiteStorage(StorageInterface):
    """SQLite storage: one table per collection, each row holds a JSON document"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()
        self._depth = 0
        self._rollback_only = False

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Create the table on first use"""
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
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        if self._depth == 0:
            self._connection.commit()
        self._tables.add(table)

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._connection.execute(f"""
            INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?,
                COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                ?)
        """, (record_id, json.dumps(data, default=str), record_id, now, now))

    def _read(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._connection.execute(
            f"SELECT data FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return json.loads(row['data']) if row else None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._write(table, record_id, data)
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return self._read(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find documents matching filters (JSON key equality)"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)

            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) IS ?")
                params.extend([f'$."{key}"', value])

            cursor = self._connection.execute(
                f"SELECT data FROM {table} WHERE {' AND '.join(conditions)} ORDER BY rowid",
                params
            )
            # json_extract maps JSON true/false to 1/0, so re-check in Python
            return [
                record for record in (json.loads(row['data']) for row in cursor.fetchall())
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def modify(self, table: str, record_id: str, mutator: Mutator) -> Optional[Dict[str, Any]]:
        with self.atomic():
            self._ensure_table(table)
            current = self._read(table, record_id)
            if current is None:
                return None
            updated = mutator(current)
            self._write(table, record_id, updated)
            return updated

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        """Start (or join) a write transaction; holds the store lock until it ends"""
        self._lock.acquire()
        if self._depth == 0:
            if self._connection.in_transaction:
                self._connection.commit()
            # IMMEDIATE takes the database write lock up front, so other
            # processes cannot interleave a write between our read and write
            self._connection.execute("BEGIN IMMEDIATE")
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            if self._rollback_only:
                self._connection.rollback()
                self._tables.clear()
                self._rollback_only = False
            else:
                self._connection.commit()
        self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self._connection.rollback()
            # Tables created inside the transaction are gone too
            self._tables.clear()
            self._rollback_only = False
        else:
            self._rollback_only = True
        self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    memory://                  -> InMemoryStorage
    sqlite:///path/to/file.db  -> SQLiteStorage on that file
    sqlite://:memory:          -> SQLiteStorage in memory
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    if database_url.startswith("sqlite://"):
        return SQLiteStorage(database_url[len("sqlite://"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
