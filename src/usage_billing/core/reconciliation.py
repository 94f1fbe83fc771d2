"""
Reconciliation Writer

Appends one outcome-annotated ledger row per tenant after dispatch. The pending
row written before dispatch is left untouched.

A failed write here is logged and reported, never retried, and never undoes a
charge that already went through.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import structlog

from ..persistence.models import BillingRecord, ChargeStatus
from ..persistence.repository import LedgerStore
from .models import ChargeOutcome, OutcomeStatus

logger = structlog.get_logger()

MISSING_OUTCOME = "No charge outcome recorded"

# Skipped tenants had nothing to charge; their ledger status stays pending.
OUTCOME_TO_STATUS = {
    OutcomeStatus.SUCCESS: ChargeStatus.SUCCESS,
    OutcomeStatus.FAILED: ChargeStatus.FAILED,
    OutcomeStatus.SKIPPED: ChargeStatus.PENDING,
}


@dataclass
class ReconciliationResult:
    """Rows built for reconciliation and whether they reached the ledger."""
    records: List[BillingRecord] = field(default_factory=list)
    written: bool = False
    error: Optional[str] = None


class ReconciliationWriter:
    """Maps charge outcomes onto new ledger rows."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    def build(
        self,
        records: Sequence[BillingRecord],
        outcomes: Sequence[ChargeOutcome],
        processed_at: Optional[str] = None,
    ) -> List[BillingRecord]:
        """Join records and outcomes by tenant_key into reconciliation rows."""
        by_tenant: Dict[str, ChargeOutcome] = {o.tenant_key: o for o in outcomes}
        processed_at = processed_at or datetime.now(timezone.utc).isoformat()

        rows: List[BillingRecord] = []
        for record in records:
            outcome = by_tenant.get(record.tenant_key)
            if outcome is None:
                rows.append(record.with_outcome(
                    ChargeStatus.FAILED,
                    charge_error_message=MISSING_OUTCOME,
                ))
                continue

            status = OUTCOME_TO_STATUS[outcome.status]
            rows.append(record.with_outcome(
                status,
                charge_id=outcome.charge_id,
                charge_error_message=outcome.error_message if status == ChargeStatus.FAILED else None,
                charge_processed_at=processed_at if status == ChargeStatus.SUCCESS else None,
            ))
        return rows

    async def write(
        self,
        records: Sequence[BillingRecord],
        outcomes: Sequence[ChargeOutcome],
    ) -> ReconciliationResult:
        """Build and insert reconciliation rows; never raises on write failure."""
        rows = self.build(records, outcomes)
        result = ReconciliationResult(records=rows)

        try:
            await self.ledger.insert(rows)
            result.written = True
        except Exception as e:
            result.error = str(e)
            logger.error(
                "reconciliation_write_failed",
                count=len(rows),
                successful_charges=sum(1 for r in rows if r.charge_status == ChargeStatus.SUCCESS),
                error=str(e),
            )
        return result
