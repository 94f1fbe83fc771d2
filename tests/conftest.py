"""
Pytest Configuration and Fixtures
"""

import asyncio
import os
import sys
import tempfile
import time
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("SLACK_BOT_TOKEN", None)

from usage_billing.billing.provider import BillableLine, ChargeProvider  # noqa: E402
from usage_billing.config import BillingConfig  # noqa: E402
from usage_billing.core.dispatcher import ChargeDispatcher  # noqa: E402
from usage_billing.core.models import TenantIdentity, UsageCount  # noqa: E402
from usage_billing.core.orchestrator import BillingOrchestrator  # noqa: E402
from usage_billing.persistence.database import Database  # noqa: E402
from usage_billing.persistence.models import LedgerPhase  # noqa: E402
from usage_billing.persistence.repository import InMemoryLedgerStore, LedgerWriteError  # noqa: E402
from usage_billing.sources.analytics import AnalyticsSource, AnalyticsSourceError  # noqa: E402


BILLING_DATE = date(2024, 1, 15)


# ============================================================================
# Fakes
# ============================================================================

class FakeAnalyticsSource(AnalyticsSource):
    """Analytics source serving fixed snapshots."""

    def __init__(self, tenants=None, usage=None, fail_tenants=False, fail_usage=False):
        self.tenants: List[TenantIdentity] = list(tenants or [])
        self.usage: Dict[str, int] = dict(usage or {})
        self.fail_tenants = fail_tenants
        self.fail_usage = fail_usage
        self.usage_dates: List[date] = []

    async def list_active_tenants(self):
        if self.fail_tenants:
            raise AnalyticsSourceError("analytics unavailable")
        return list(self.tenants)

    async def get_usage_counts(self, billing_date):
        self.usage_dates.append(billing_date)
        if self.fail_usage:
            raise AnalyticsSourceError("usage query failed")
        return [UsageCount(tenant_key=k, unit_count=v) for k, v in self.usage.items()]


class FakeChargeProvider(ChargeProvider):
    """
    Scriptable charge provider.

    `charge_results[tenant]` is a list consumed one entry per create_charge
    call; an exception instance is raised, anything else is the charge id.
    Tenants in `no_line` have no billable line. Every call is recorded along
    with the peak number of concurrent calls. `failed_at` and `completed_at`
    hold monotonic times of the first failed and the successful charge.
    """

    def __init__(self, charge_results=None, no_line=(), line_errors=None, delay: float = 0.0):
        self.charge_results: Dict[str, list] = {k: list(v) for k, v in (charge_results or {}).items()}
        self.no_line = set(no_line)
        self.line_errors: Dict[str, list] = {k: list(v) for k, v in (line_errors or {}).items()}
        self.delay = delay
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.failed_at: Dict[str, float] = {}
        self.completed_at: Dict[str, float] = {}
        self.closed = False

    async def _enter(self):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

    async def find_billable_line(self, tenant):
        self.calls.append(("find_billable_line", tenant.tenant_key))
        await self._enter()
        errors = self.line_errors.get(tenant.tenant_key)
        if errors:
            raise errors.pop(0)
        if tenant.tenant_key in self.no_line:
            return None
        return BillableLine(line_id=f"gid://line/{tenant.tenant_key}", tenant_key=tenant.tenant_key)

    async def create_charge(self, tenant, line, amount, description):
        self.calls.append(("create_charge", tenant.tenant_key, amount, description))
        await self._enter()
        results = self.charge_results.get(tenant.tenant_key)
        result = results.pop(0) if results else f"charge-{tenant.tenant_key}"
        if isinstance(result, BaseException):
            self.failed_at.setdefault(tenant.tenant_key, time.monotonic())
            raise result
        self.completed_at[tenant.tenant_key] = time.monotonic()
        return result

    async def aclose(self):
        self.closed = True

    def charge_calls(self, tenant_key: Optional[str] = None):
        return [c for c in self.calls if c[0] == "create_charge" and (tenant_key is None or c[1] == tenant_key)]


class RecordingNotifier:
    """Notification channel that keeps every report."""

    def __init__(self, fail: bool = False):
        self.reports = []
        self.fail = fail
        self.closed = False

    async def send(self, report):
        self.reports.append(report)
        if self.fail:
            raise RuntimeError("slack is down")

    async def aclose(self):
        self.closed = True


class FailingLedger(InMemoryLedgerStore):
    """In-memory ledger that rejects inserts for the given phase."""

    def __init__(self, fail_phase: LedgerPhase):
        super().__init__()
        self.fail_phase = fail_phase

    async def insert(self, records):
        if records and records[0].phase == self.fail_phase:
            raise LedgerWriteError("ledger unavailable")
        return await super().insert(records)


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def tenant(key: str) -> TenantIdentity:
    return TenantIdentity(tenant_key=key, access_credential=f"token-{key}")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    Database.reset_instance()

    db = Database(f"sqlite:///{db_path}")
    db.initialize()

    yield db

    db.close()
    Database.reset_instance()
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def config():
    """Default billing configuration; backoff sleeps go through the `sleep` fixture."""
    return BillingConfig(
        rate_per_million=Decimal("10"),
        concurrency=5,
        max_retries=3,
        retry_base_delay=1.0,
        api_timeout_seconds=5.0,
    )


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def scenario_analytics():
    """Tenants A, B, C with 2M, 0 and 500k units."""
    return FakeAnalyticsSource(
        tenants=[tenant("A"), tenant("B"), tenant("C")],
        usage={"A": 2_000_000, "B": 0, "C": 500_000},
    )


@pytest.fixture
def make_orchestrator(config, sleep):
    """Factory wiring an orchestrator around fakes."""

    def _make(analytics, provider=None, ledger=None, notifier=None, cfg=None):
        cfg = cfg or config
        provider = provider or FakeChargeProvider()
        ledger = ledger if ledger is not None else InMemoryLedgerStore()
        return BillingOrchestrator(
            config=cfg,
            analytics=analytics,
            ledger=ledger,
            dispatcher=ChargeDispatcher(provider, cfg, sleep=sleep),
            notifier=notifier,
        )

    return _make
