"""
Tests for the Database Analytics Source
"""

import threading
from datetime import datetime

import pytest

from conftest import BILLING_DATE
from usage_billing.core.models import UsageCount
from usage_billing.persistence.database import Database
from usage_billing.persistence.repository import TenantSessionRepository, UsageEventRepository
from usage_billing.sources.analytics import AnalyticsSourceError, DatabaseAnalyticsSource


@pytest.fixture
def seeded_db(temp_db):
    sessions = TenantSessionRepository(temp_db)
    sessions.add("shop-a.myshopify.com", "shpat_a", "2023-06-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00")
    sessions.add("shop-b.myshopify.com", "shpat_b")
    sessions.add("shop-c.myshopify.com", "")

    events = UsageEventRepository(temp_db)
    for hour in range(3):
        events.add("shop-a.myshopify.com", "page_viewed", datetime(2024, 1, 15, hour))
    events.add("shop-a.myshopify.com", "product_viewed", datetime(2024, 1, 15, 5))
    events.add("shop-b.myshopify.com", "page_viewed", datetime(2024, 1, 16, 1))
    return temp_db


class TestDatabaseAnalyticsSource:
    """Test identity and usage reads."""

    @pytest.mark.asyncio
    async def test_lists_tenants_with_credentials(self, seeded_db):
        tenants = await DatabaseAnalyticsSource(seeded_db).list_active_tenants()

        assert [t.tenant_key for t in tenants] == ["shop-a.myshopify.com", "shop-b.myshopify.com"]
        assert tenants[0].access_credential == "shpat_a"
        assert tenants[0].registered_at == "2023-06-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_counts_named_events_for_day(self, seeded_db):
        counts = await DatabaseAnalyticsSource(seeded_db).get_usage_counts(BILLING_DATE)

        assert counts == [UsageCount(tenant_key="shop-a.myshopify.com", unit_count=3)]

    @pytest.mark.asyncio
    async def test_event_name_configurable(self, seeded_db):
        source = DatabaseAnalyticsSource(seeded_db, event_name="product_viewed")

        counts = await source.get_usage_counts(BILLING_DATE)

        assert counts == [UsageCount(tenant_key="shop-a.myshopify.com", unit_count=1)]

    @pytest.mark.asyncio
    async def test_queries_run_off_the_event_loop(self, seeded_db, monkeypatch):
        threads = []
        execute = seeded_db.execute

        def recording_execute(query, params=()):
            threads.append(threading.get_ident())
            return execute(query, params)

        monkeypatch.setattr(seeded_db, "execute", recording_execute)
        source = DatabaseAnalyticsSource(seeded_db)

        await source.list_active_tenants()
        await source.get_usage_counts(BILLING_DATE)

        assert len(threads) == 2
        assert threading.get_ident() not in threads

    @pytest.mark.asyncio
    async def test_counts_events_in_sqlite_default_layout(self, temp_db):
        for created_at in ("2024-01-15 10:00:00", "2024-01-15T10:00:00"):
            temp_db.execute(
                "INSERT INTO usage_events (shop, name, created_at) VALUES (?, ?, ?)",
                ("A", "page_viewed", created_at),
            )

        counts = await DatabaseAnalyticsSource(temp_db).get_usage_counts(BILLING_DATE)

        assert counts == [UsageCount(tenant_key="A", unit_count=2)]

    @pytest.mark.asyncio
    async def test_read_failure_wrapped(self, tmp_path):
        db = Database(f"sqlite:///{tmp_path}/missing/dir/analytics.db")

        with pytest.raises(AnalyticsSourceError):
            await DatabaseAnalyticsSource(db).list_active_tenants()

    def test_credential_not_in_repr(self):
        from conftest import tenant

        assert "token-" not in repr(tenant("shop-a"))
