"""
Analytics Source

Read-only access to tenant identities and daily usage counts. A billing run
takes one snapshot of each at the start and never writes back.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional

import structlog

from ..core.models import TenantIdentity, UsageCount
from ..persistence.database import Database, get_database
from ..persistence.repository import TenantSessionRepository, UsageEventRepository

logger = structlog.get_logger()


class AnalyticsSourceError(Exception):
    """Raised when identities or usage could not be read."""
    pass


class AnalyticsSource(ABC):
    """Abstract identity and usage source."""

    @abstractmethod
    async def list_active_tenants(self) -> List[TenantIdentity]:
        """Every tenant with a usable credential."""
        pass

    @abstractmethod
    async def get_usage_counts(self, billing_date: date) -> List[UsageCount]:
        """Unit counts per tenant for one calendar day."""
        pass


class DatabaseAnalyticsSource(AnalyticsSource):
    """
    Analytics source backed by the tenant_sessions and usage_events tables.

    Usage is the number of events named `event_name` recorded on the day.
    """

    def __init__(self, db: Optional[Database] = None, event_name: str = "page_viewed"):
        self.db = db or get_database()
        self.event_name = event_name
        self.sessions = TenantSessionRepository(self.db)
        self.events = UsageEventRepository(self.db)

    async def list_active_tenants(self) -> List[TenantIdentity]:
        try:
            rows = await asyncio.to_thread(self.sessions.list_active)
        except Exception as e:
            raise AnalyticsSourceError(f"Failed to read tenant sessions: {e}") from e

        tenants = [
            TenantIdentity(
                tenant_key=row["shop"],
                access_credential=row["access_token"],
                registered_at=_as_text(row.get("created_at")),
                updated_at=_as_text(row.get("updated_at")),
            )
            for row in rows
        ]
        logger.info("active_tenants_loaded", count=len(tenants))
        return tenants

    async def get_usage_counts(self, billing_date: date) -> List[UsageCount]:
        try:
            rows = await asyncio.to_thread(self.events.count_by_shop, self.event_name, billing_date)
        except Exception as e:
            raise AnalyticsSourceError(f"Failed to read usage events: {e}") from e

        counts = [UsageCount(tenant_key=row["shop"], unit_count=int(row["event_count"])) for row in rows]
        logger.info(
            "usage_counts_loaded",
            billing_date=billing_date.isoformat(),
            tenants_with_usage=len(counts),
        )
        return counts


def _as_text(value) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return value.isoformat()
