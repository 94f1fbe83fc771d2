"""
Repository Layer for the Billing Ledger

The ledger is append-only: rows are inserted, never updated or deleted.
Inserting the same records twice stores them twice. Readers that need the
current status of a tenant take the latest row per (tenant_key, billing_date).
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence
from threading import Lock
import structlog

from .database import Database, get_database
from .models import BillingRecord

logger = structlog.get_logger()


class LedgerWriteError(Exception):
    """Raised when a batch of ledger rows could not be persisted."""
    pass


def latest_per_tenant(records: Iterable[BillingRecord]) -> List[BillingRecord]:
    """
    Reduce a ledger history to the latest row per (tenant_key, billing_date).

    Records must be in insertion order, as returned by read_by_date().
    """
    latest: Dict[tuple, BillingRecord] = {}
    for record in records:
        latest[record.key] = record
    return list(latest.values())


class LedgerStore(ABC):
    """Append-only store for billing records."""

    @abstractmethod
    async def insert(self, records: Sequence[BillingRecord]) -> int:
        """
        Append records as one batch.

        Not idempotent. Raises LedgerWriteError if the batch was not stored.
        """
        pass

    @abstractmethod
    async def read_by_date(self, billing_date: date) -> List[BillingRecord]:
        """All rows for a date, oldest first."""
        pass


class LedgerRepository(LedgerStore):
    """Ledger backed by the SQL database. Blocking driver calls run in a worker thread."""

    INSERT_SQL = """INSERT INTO billing_records
        (record_id, tenant_key, billing_date, unit_count, billing_amount,
         rate_per_million, charge_status, charge_id, charge_error_message,
         charge_processed_at, phase, run_id, inserted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    async def insert(self, records: Sequence[BillingRecord]) -> int:
        if not records:
            logger.info("ledger_insert_skipped", reason="no_records")
            return 0

        try:
            await asyncio.to_thread(self.db.execute_many, self.INSERT_SQL, [r.to_db_tuple() for r in records])
        except Exception as e:
            logger.error("ledger_insert_failed", count=len(records), error=str(e))
            raise LedgerWriteError(f"Failed to insert {len(records)} billing records: {e}") from e

        logger.info(
            "ledger_records_inserted",
            count=len(records),
            phase=records[0].phase.value,
            billing_date=records[0].billing_date.isoformat(),
        )
        return len(records)

    async def read_by_date(self, billing_date: date) -> List[BillingRecord]:
        results = await asyncio.to_thread(
            self.db.execute,
            "SELECT * FROM billing_records WHERE billing_date = ? ORDER BY id ASC",
            (billing_date.isoformat(),),
        )
        return [BillingRecord.from_row(r) for r in results]

    def count(self) -> int:
        """Count ledger rows."""
        results = self.db.execute("SELECT COUNT(*) as cnt FROM billing_records")
        return results[0]["cnt"] if results else 0


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger with the same append-only semantics."""

    def __init__(self):
        self._rows: List[BillingRecord] = []
        self._lock = Lock()

    async def insert(self, records: Sequence[BillingRecord]) -> int:
        with self._lock:
            self._rows.extend(records)
        return len(records)

    async def read_by_date(self, billing_date: date) -> List[BillingRecord]:
        with self._lock:
            return [r for r in self._rows if r.billing_date == billing_date]

    @property
    def rows(self) -> List[BillingRecord]:
        with self._lock:
            return list(self._rows)


class TenantSessionRepository:
    """Repository for tenant identity rows."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def add(
        self,
        shop: str,
        access_token: Optional[str],
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> None:
        self.db.execute(
            "INSERT INTO tenant_sessions (shop, access_token, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (shop, access_token, created_at, updated_at)
        )

    def list_active(self) -> List[Dict[str, Any]]:
        """Sessions with a non-empty shop and access token."""
        return self.db.execute(
            """SELECT shop, access_token, created_at, updated_at
               FROM tenant_sessions
               WHERE access_token IS NOT NULL AND access_token != ''
                 AND shop IS NOT NULL AND shop != ''
               ORDER BY shop ASC"""
        )


class UsageEventRepository:
    """Repository for raw usage events."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def add(self, shop: str, name: str, created_at: datetime) -> None:
        self.db.execute(
            "INSERT INTO usage_events (shop, name, created_at) VALUES (?, ?, ?)",
            (shop, name, created_at.isoformat())
        )

    def count_by_shop(self, event_name: str, day: date) -> List[Dict[str, Any]]:
        """
        Event counts per shop within [day 00:00, next day 00:00).

        SQLite stores timestamps as text in more than one layout, so both sides
        of the window are normalised with datetime() before comparing.
        """
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)
        if self.db.is_postgres:
            window = "created_at >= ? AND created_at < ?"
        else:
            window = "datetime(created_at) >= datetime(?) AND datetime(created_at) < datetime(?)"
        return self.db.execute(
            f"""SELECT shop, COUNT(*) as event_count
               FROM usage_events
               WHERE name = ?
                 AND {window}
                 AND shop IS NOT NULL AND shop != ''
               GROUP BY shop""",
            (event_name, start.isoformat(), end.isoformat())
        )
