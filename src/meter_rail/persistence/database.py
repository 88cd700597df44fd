"""
Database Connection Layer

SQLite storage for dedupe stamps and usage events, with automatic schema
creation. Connections are per thread; every `transaction()` block commits on
success and rolls back on error.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

DEFAULT_DATABASE_URL = "sqlite:///meter_rail.db"

SCHEMA_SQL = """
-- Dedupe stamps: one row per identity, expiry as ISO-8601 UTC text
CREATE TABLE IF NOT EXISTS dedupe_stamps (
    dedupe_key TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    request_id TEXT NOT NULL,
    idempotency_key TEXT,
    endpoint TEXT,
    stamped_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

-- Usage events (append-only)
CREATE TABLE IF NOT EXISTS usage_events (
    event_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    endpoint TEXT NOT NULL,
    units TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    request_id TEXT NOT NULL,
    idempotency_key TEXT,
    rule_id TEXT,
    status_code INTEGER,
    metadata TEXT  -- JSON object
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_dedupe_expires ON dedupe_stamps(expires_at);
CREATE INDEX IF NOT EXISTS idx_usage_events_tenant ON usage_events(tenant_id);
CREATE INDEX IF NOT EXISTS idx_usage_events_occurred ON usage_events(occurred_at);
"""


class Database:
    """
    SQLite connection manager.

    Usage:
        db = Database("sqlite:///usage.db")
        db.initialize()
        with db.transaction() as conn:
            conn.execute("SELECT * FROM usage_events")
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
        if not self.database_url.startswith("sqlite:///"):
            raise ValueError(f"Unsupported database URL: {self.database_url}")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False
        # Every connection opened by any thread, so close() can reach them all
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        # :memory: databases are per connection, so share one across threads
        self._shared_conn: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self._get_sqlite_path() == ":memory:"

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        return self.database_url[len("sqlite:///"):]

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._get_sqlite_path(),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        if not self.is_memory:
            # WAL mode for concurrent readers
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        with self._connections_lock:
            self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection inside a transaction; commit on success, roll back on error."""
        if self.is_memory:
            with self._shared_lock:
                if self._shared_conn is None:
                    self._shared_conn = self._open()
                yield from self._run_transaction(self._shared_conn)
            return

        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._open()
        yield from self._run_transaction(self._local.conn)

    @staticmethod
    def _run_transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
        # IMMEDIATE takes the write lock up front so conditional upserts serialize
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            with self.transaction() as conn:
                for statement in SCHEMA_SQL.split(";"):
                    if statement.strip():
                        conn.execute(statement)

                now = datetime.now(timezone.utc).isoformat()
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url, schema_version=SCHEMA_VERSION)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.transaction() as conn:
            cursor = conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def execute_write(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of changed rows."""
        with self.transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets in one transaction."""
        with self.transaction() as conn:
            cursor = conn.executemany(query, params_list)
            return cursor.rowcount

    @property
    def open_connections(self) -> int:
        with self._connections_lock:
            return len(self._connections)

    def close(self) -> None:
        """Close every connection opened by any thread."""
        with self._shared_lock:
            with self._connections_lock:
                connections, self._connections = self._connections, []
            for conn in connections:
                conn.close()
            self._shared_conn = None
            # Fresh thread-local storage drops every thread's stale handle
            self._local = threading.local()
        logger.debug("database_closed", url=self.database_url, connections=len(connections))
