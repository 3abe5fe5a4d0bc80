"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.
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

SCHEMA_SQL = """
-- Ledger entries (append-only)
CREATE TABLE IF NOT EXISTS page_transactions (
    transaction_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    type TEXT NOT NULL,
    delta INTEGER NOT NULL,
    balance_after INTEGER NOT NULL CHECK (balance_after >= 0),
    reference_job_id TEXT,
    payment_reference TEXT UNIQUE,
    note TEXT,
    created_at TEXT NOT NULL,
    prev_hash TEXT NOT NULL,
    entry_hash TEXT NOT NULL,
    UNIQUE (user_id, sequence)
);

-- Print jobs
CREATE TABLE IF NOT EXISTS print_jobs (
    job_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    request TEXT NOT NULL,  -- JSON object
    equivalent_pages_charged INTEGER NOT NULL,
    pages_to_print INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'Pending',
    submitted_at TEXT NOT NULL,
    completed_at TEXT,
    error_message TEXT
);

-- Top-up payments
CREATE TABLE IF NOT EXISTS payments (
    payment_code TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    a4_pages INTEGER NOT NULL,
    amount INTEGER NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    completed_at TEXT
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Ledger entries may never change once written
CREATE TRIGGER IF NOT EXISTS page_transactions_no_update
BEFORE UPDATE ON page_transactions
BEGIN
    SELECT RAISE(ABORT, 'page_transactions is append-only');
END;

CREATE TRIGGER IF NOT EXISTS page_transactions_no_delete
BEFORE DELETE ON page_transactions
BEGIN
    SELECT RAISE(ABORT, 'page_transactions is append-only');
END;

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_transactions_user ON page_transactions(user_id, sequence);
CREATE INDEX IF NOT EXISTS idx_transactions_type ON page_transactions(user_id, type);
CREATE INDEX IF NOT EXISTS idx_jobs_user ON print_jobs(user_id, submitted_at);
CREATE INDEX IF NOT EXISTS idx_jobs_batch ON print_jobs(batch_id);
CREATE INDEX IF NOT EXISTS idx_payments_user ON payments(user_id, status);
"""

# Timestamps stay ISO-8601 TEXT on both backends so rows round-trip identically.
POSTGRES_SCHEMA_SQL = """
-- Ledger entries (append-only)
CREATE TABLE IF NOT EXISTS page_transactions (
    transaction_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    type TEXT NOT NULL,
    delta INTEGER NOT NULL,
    balance_after INTEGER NOT NULL CHECK (balance_after >= 0),
    reference_job_id TEXT,
    payment_reference TEXT UNIQUE,
    note TEXT,
    created_at TEXT NOT NULL,
    prev_hash TEXT NOT NULL,
    entry_hash TEXT NOT NULL,
    UNIQUE (user_id, sequence)
);

-- Print jobs
CREATE TABLE IF NOT EXISTS print_jobs (
    job_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    request JSONB NOT NULL,
    equivalent_pages_charged INTEGER NOT NULL,
    pages_to_print INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'Pending',
    submitted_at TEXT NOT NULL,
    completed_at TEXT,
    error_message TEXT
);

-- Top-up payments
CREATE TABLE IF NOT EXISTS payments (
    payment_code TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    a4_pages INTEGER NOT NULL,
    amount INTEGER NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    completed_at TEXT
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_transactions_user ON page_transactions(user_id, sequence);
CREATE INDEX IF NOT EXISTS idx_transactions_type ON page_transactions(user_id, type);
CREATE INDEX IF NOT EXISTS idx_jobs_user ON print_jobs(user_id, submitted_at);
CREATE INDEX IF NOT EXISTS idx_jobs_batch ON print_jobs(batch_id);
CREATE INDEX IF NOT EXISTS idx_payments_user ON payments(user_id, status);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Queries are written with "?" placeholders and translated for PostgreSQL.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.connection() as conn:
            conn.execute("SELECT * FROM page_transactions")
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///quota_rail.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "quota_rail.db"

    def _adapt(self, query: str) -> str:
        return query.replace("?", "%s") if self.is_postgres else query

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection; commits on success, rolls back on error."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.execute(self._adapt(query), params)
            else:
                cursor = conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets in one transaction."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.executemany(self._adapt(query), params_list)
            else:
                cursor = conn.executemany(query, params_list)
            return cursor.rowcount

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
