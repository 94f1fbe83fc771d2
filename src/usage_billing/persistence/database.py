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
-- Append-only billing ledger (never UPDATEd)
CREATE TABLE IF NOT EXISTS billing_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL UNIQUE,
    tenant_key TEXT NOT NULL,
    billing_date TEXT NOT NULL,
    unit_count INTEGER NOT NULL,
    billing_amount TEXT NOT NULL,
    rate_per_million TEXT NOT NULL,
    charge_status TEXT NOT NULL DEFAULT 'pending',
    charge_id TEXT,
    charge_error_message TEXT,
    charge_processed_at TEXT,
    phase TEXT NOT NULL DEFAULT 'pending',
    run_id TEXT,
    inserted_at TEXT NOT NULL
);

-- Tenant identities (read by the analytics source)
CREATE TABLE IF NOT EXISTS tenant_sessions (
    shop TEXT NOT NULL,
    access_token TEXT,
    created_at TEXT,
    updated_at TEXT
);

-- Raw usage events (read by the analytics source)
CREATE TABLE IF NOT EXISTS usage_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    shop TEXT,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_billing_date ON billing_records(billing_date);
CREATE INDEX IF NOT EXISTS idx_billing_tenant ON billing_records(tenant_key, billing_date);
CREATE INDEX IF NOT EXISTS idx_usage_events_time ON usage_events(name, created_at);
"""

POSTGRES_SCHEMA_SQL = """
-- Append-only billing ledger (never UPDATEd)
CREATE TABLE IF NOT EXISTS billing_records (
    id BIGSERIAL PRIMARY KEY,
    record_id TEXT NOT NULL UNIQUE,
    tenant_key TEXT NOT NULL,
    billing_date DATE NOT NULL,
    unit_count BIGINT NOT NULL,
    billing_amount NUMERIC(14, 2) NOT NULL,
    rate_per_million NUMERIC(14, 4) NOT NULL,
    charge_status TEXT NOT NULL DEFAULT 'pending',
    charge_id TEXT,
    charge_error_message TEXT,
    charge_processed_at TIMESTAMPTZ,
    phase TEXT NOT NULL DEFAULT 'pending',
    run_id TEXT,
    inserted_at TIMESTAMPTZ NOT NULL
);

-- Tenant identities
CREATE TABLE IF NOT EXISTS tenant_sessions (
    shop TEXT NOT NULL,
    access_token TEXT,
    created_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ
);

-- Raw usage events
CREATE TABLE IF NOT EXISTS usage_events (
    id BIGSERIAL PRIMARY KEY,
    shop TEXT,
    name TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_billing_date ON billing_records(billing_date);
CREATE INDEX IF NOT EXISTS idx_billing_tenant ON billing_records(tenant_key, billing_date);
CREATE INDEX IF NOT EXISTS idx_usage_events_time ON usage_events(name, created_at);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Queries are written with `?` placeholders and translated for PostgreSQL.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        rows = db.execute("SELECT * FROM billing_records WHERE billing_date = ?", ("2024-01-01",))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///usage_billing.db"
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

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests, config reloads)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "usage_billing.db"

    def _translate(self, query: str) -> str:
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe). Commits on success."""
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
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install usage-billing-rail[postgres]")

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
                cursor.execute(self._translate(query), params)
                if cursor.description:
                    return [dict(row) for row in cursor.fetchall()]
                return []
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
                cursor.executemany(self._translate(query), params_list)
                return cursor.rowcount
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
