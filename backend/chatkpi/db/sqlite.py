"""SQLite database schema and connection manager for chatkpi.

Provides the SQLiteDB class, the single entry point for all relational
persistence. Works against a file path or ``:memory:``. Enables WAL mode on
file databases and creates the full schema (4 tables) on initialization.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

MEMORY_PATH = ":memory:"

# Timestamps are stored as fixed-width UTC ISO strings, so text comparison
# orders them chronologically.
_SCHEMA_SQL = """
-- Clients (upload owners)
CREATE TABLE IF NOT EXISTS clients (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    color TEXT,
    created_at TEXT NOT NULL
);

-- Upload audit entries
CREATE TABLE IF NOT EXISTS uploads (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    filename TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    records_count INTEGER NOT NULL DEFAULT 0,
    uploaded_at TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('PROCESSING','SUCCESS','FAILED')),
    error_message TEXT,
    warnings TEXT
);

-- Canonical chat records (append-only)
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    upload_id TEXT,
    client_id TEXT,
    conversation_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('ai','tenant')),
    message TEXT NOT NULL,
    response_time_ms REAL,
    resolved INTEGER,
    satisfaction_score REAL
);

-- Conversation aggregates (last write wins per conversation_id)
CREATE TABLE IF NOT EXISTS conversations (
    conversation_id TEXT PRIMARY KEY,
    client_id TEXT,
    upload_id TEXT,
    tenant_id TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    message_count INTEGER NOT NULL,
    resolved INTEGER NOT NULL,
    satisfaction_score REAL,
    duration INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_client_ts ON messages(client_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, upload_id);
CREATE INDEX IF NOT EXISTS idx_conversations_client_start ON conversations(client_id, start_time);
CREATE INDEX IF NOT EXISTS idx_uploads_client ON uploads(client_id, uploaded_at);
"""


class SQLiteDB:
    """SQLite connection manager with schema auto-creation.

    Usage:
        db = SQLiteDB("/path/to/db.sqlite")
        db.execute("INSERT INTO ...", params)
        rows = db.fetchall("SELECT * FROM ...")

    Or as a context manager:
        with SQLiteDB(":memory:") as db:
            db.execute(...)

    The connection is shared across request threads; every statement runs
    under a lock. Outside a transaction() block each statement commits on its
    own. Inside one, nothing is committed until the outermost block exits.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    @property
    def in_memory(self) -> bool:
        return self._db_path == MEMORY_PATH

    def _configure(self) -> None:
        """Enable WAL mode for file-backed databases."""
        if not self.in_memory:
            self._conn.execute("PRAGMA journal_mode=WAL")

    def _create_schema(self) -> None:
        """Create all tables if they don't exist."""
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator["SQLiteDB"]:
        """Run a block of statements atomically.

        Commits when the outermost block exits normally and rolls back when
        it raises. Nested blocks join the enclosing transaction. The lock is
        held for the whole block, so other threads never see partial writes.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.rollback()
                raise
            self._depth -= 1
            if outermost:
                self._conn.commit()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def _commit_unless_in_transaction(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute a single SQL statement and commit."""
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._commit_unless_in_transaction()
            return cursor

    def executemany(self, sql: str, params_seq: Sequence[Sequence[Any]]) -> sqlite3.Cursor:
        """Execute a SQL statement for each set of params and commit."""
        with self._lock:
            cursor = self._conn.executemany(sql, params_seq)
            self._commit_unless_in_transaction()
            return cursor

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        """Execute a query and return the first row as a dict, or None."""
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            return None
        return dict(row)

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Execute a query and return all rows as a list of dicts."""
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> "SQLiteDB":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
