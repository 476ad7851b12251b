"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

A unit of work opened with ``atomic()`` holds the backend's write lock until
it commits or rolls back, so a read-modify-write inside it never sees a stale
value. Nested ``atomic()`` blocks behave like savepoints.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager

from .errors import PersistenceError
from .logging_config import get_logger

logger = get_logger("bank_ledger.storage")


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
        """Load all records from a table in insertion order"""
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
    def next_sequence(self, name: str, seed: Optional[Callable[[], int]] = None) -> int:
        """
        Atomically increment and return a named sequence.

        ``seed`` is called only when the sequence does not exist yet and
        supplies its current value (the default start is 0, so the first
        value handed out is 1).
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a unit of work (or a savepoint when already inside one)"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the innermost unit of work"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the innermost unit of work"""
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """True while the calling thread holds an open unit of work"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._snapshots: List[str] = []
        self._owner: Optional[int] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

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

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def next_sequence(self, name: str, seed: Optional[Callable[[], int]] = None) -> int:
        with self._lock:
            if name not in self._sequences:
                self._sequences[name] = seed() if seed else 0
            self._sequences[name] += 1
            return self._sequences[name]

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return bool(self._snapshots) and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Take the lock and remember the state to restore on rollback"""
        self._lock.acquire()
        self._owner = threading.get_ident()
        self._snapshots.append(json.dumps({"data": self._data, "sequences": self._sequences}))

    def commit(self) -> None:
        if not self._snapshots:
            return
        self._snapshots.pop()
        if not self._snapshots:
            self._owner = None
        self._lock.release()

    def rollback(self) -> None:
        if not self._snapshots:
            return
        snapshot = json.loads(self._snapshots.pop())
        self._data = snapshot["data"]
        self._sequences = snapshot["sequences"]
        if not self._snapshots:
            self._owner = None
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._owner: Optional[int] = None
        self._tables = set()
        with self._errors("connect"):
            # Autocommit mode; units of work are opened explicitly
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._connection.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)

    @contextmanager
    def _errors(self, operation: str):
        """Report driver failures as PersistenceError"""
        try:
            yield
        except sqlite3.Error as e:
            logger.error(f"SQLite {operation} failed: {e}")
            raise PersistenceError(f"Storage {operation} failed: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise PersistenceError("Storage is closed")
        return self._connection.execute(sql, params)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
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
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._errors("save"):
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
        with self._lock, self._errors("load"):
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, self._errors("load_all"):
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, self._errors("delete"):
            self._ensure_table(table)
            cursor = self._execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._errors("exists"):
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, self._errors("count"):
            self._ensure_table(table)
            row = self._execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._errors("clear_table"):
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def next_sequence(self, name: str, seed: Optional[Callable[[], int]] = None) -> int:
        with self.atomic():
            with self._errors("next_sequence"):
                row = self._execute(
                    "SELECT value FROM sequences WHERE name = ?", (name,)
                ).fetchone()
            if row is None:
                current = seed() if seed else 0
            else:
                current = row['value']
            with self._errors("next_sequence"):
                self._execute("""
                    INSERT INTO sequences (name, value) VALUES (?, ?)
                    ON CONFLICT(name) DO UPDATE SET value = excluded.value
                """, (name, current + 1))
            return current + 1

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0 and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Open a write transaction, or a savepoint when nested"""
        self._lock.acquire()
        try:
            with self._errors("begin"):
                if self._depth == 0:
                    self._execute("BEGIN IMMEDIATE")
                else:
                    self._execute(f"SAVEPOINT sp_{self._depth}")
        except PersistenceError:
            self._lock.release()
            raise
        self._depth += 1
        self._owner = threading.get_ident()

    def commit(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        try:
            with self._errors("commit"):
                if self._depth == 0:
                    try:
                        self._execute("COMMIT")
                    except sqlite3.Error:
                        if self._connection.in_transaction:
                            self._execute("ROLLBACK")
                        raise
                else:
                    self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            if self._depth == 0:
                self._owner = None
            self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        # Tables created inside the rolled-back scope are gone again
        self._tables.clear()
        try:
            with self._errors("rollback"):
                if self._depth == 0:
                    self._execute("ROLLBACK")
                else:
                    self._execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                    self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            if self._depth == 0:
                self._owner = None
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite://:memory:`` and
    ``sqlite:///path/to/file.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path in ("", ":memory:", "/:memory:"):
            return SQLiteStorage(":memory:")
        # sqlite:///relative.db -> "relative.db", sqlite:////abs.db -> "/abs.db"
        return SQLiteStorage(path[1:] if path.startswith("/") else path)
    raise ValueError(f"Unsupported database URL: {database_url}")
