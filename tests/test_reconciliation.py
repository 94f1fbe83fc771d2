"""
Tests for the Reconciliation Writer
"""

from decimal import Decimal

import pytest

from conftest import BILLING_DATE, FailingLedger
from usage_billing.core.models import ChargeOutcome, OutcomeStatus
from usage_billing.core.reconciliation import MISSING_OUTCOME, ReconciliationWriter
from usage_billing.persistence.models import BillingRecord, ChargeStatus, LedgerPhase
from usage_billing.persistence.repository import InMemoryLedgerStore


def pending(tenant_key, amount):
    return BillingRecord(
        tenant_key=tenant_key,
        billing_date=BILLING_DATE,
        unit_count=int(Decimal(amount) * 100_000),
        billing_amount=Decimal(amount),
        rate_per_million=Decimal("10"),
    )


@pytest.fixture
def records():
    return [pending("A", "20.00"), pending("B", "0.00"), pending("C", "5.00")]


@pytest.fixture
def outcomes():
    return [
        ChargeOutcome("A", OutcomeStatus.SUCCESS, Decimal("20.00"), charge_id="gid://charge/A", attempts=1),
        ChargeOutcome("B", OutcomeStatus.SKIPPED, Decimal("0.00")),
        ChargeOutcome("C", OutcomeStatus.FAILED, Decimal("5.00"), error_message="Invalid access token", attempts=1),
    ]


class TestBuild:
    """Test mapping outcomes onto ledger rows."""

    def test_status_mapping(self, records, outcomes):
        rows = ReconciliationWriter(InMemoryLedgerStore()).build(records, outcomes, processed_at="2024-01-16T01:00:00+00:00")
        by_tenant = {r.tenant_key: r for r in rows}

        assert by_tenant["A"].charge_status == ChargeStatus.SUCCESS
        assert by_tenant["A"].charge_id == "gid://charge/A"
        assert by_tenant["A"].charge_processed_at == "2024-01-16T01:00:00+00:00"
        assert by_tenant["A"].charge_error_message is None

        assert by_tenant["B"].charge_status == ChargeStatus.PENDING
        assert by_tenant["B"].charge_processed_at is None

        assert by_tenant["C"].charge_status == ChargeStatus.FAILED
        assert by_tenant["C"].charge_error_message == "Invalid access token"
        assert by_tenant["C"].charge_processed_at is None

    def test_rows_are_new_reconciliation_records(self, records, outcomes):
        rows = ReconciliationWriter(InMemoryLedgerStore()).build(records, outcomes)

        assert all(r.phase == LedgerPhase.RECONCILIATION for r in rows)
        assert {r.record_id for r in rows}.isdisjoint({r.record_id for r in records})
        assert [r.billing_amount for r in rows] == [r.billing_amount for r in records]

    def test_missing_outcome_written_as_failed(self, records):
        rows = ReconciliationWriter(InMemoryLedgerStore()).build(records, [])

        assert all(r.charge_status == ChargeStatus.FAILED for r in rows)
        assert all(r.charge_error_message == MISSING_OUTCOME for r in rows)


class TestWrite:
    """Test persisting reconciliation rows."""

    @pytest.mark.asyncio
    async def test_appends_rows(self, records, outcomes):
        ledger = InMemoryLedgerStore()
        await ledger.insert(records)

        result = await ReconciliationWriter(ledger).write(records, outcomes)

        assert result.written is True
        assert result.error is None
        assert len(ledger.rows) == 6
        assert [r.phase for r in ledger.rows[:3]] == [LedgerPhase.PENDING] * 3

    @pytest.mark.asyncio
    async def test_write_failure_reported_not_raised(self, records, outcomes):
        ledger = FailingLedger(fail_phase=LedgerPhase.RECONCILIATION)

        result = await ReconciliationWriter(ledger).write(records, outcomes)

        assert result.written is False
        assert "ledger unavailable" in result.error
        assert len(result.records) == 3
        assert ledger.rows == []
