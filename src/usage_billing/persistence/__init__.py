"""
Persistence Layer for the Usage Billing Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import BillingRecord, ChargeStatus, LedgerPhase
from .repository import (
    LedgerStore,
    LedgerRepository,
    InMemoryLedgerStore,
    LedgerWriteError,
    TenantSessionRepository,
    UsageEventRepository,
    latest_per_tenant,
)

__all__ = [
    "Database",
    "get_database",
    "BillingRecord",
    "ChargeStatus",
    "LedgerPhase",
    "LedgerStore",
    "LedgerRepository",
    "InMemoryLedgerStore",
    "LedgerWriteError",
    "TenantSessionRepository",
    "UsageEventRepository",
    "latest_per_tenant",
]
