"""
Run Report

Structured summary of one billing run, rendered by notification channels and
returned by the trigger surface.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from ..persistence.models import BillingRecord
from .models import ChargeOutcome, OutcomeStatus


class RunState(Enum):
    """States of the billing run state machine."""
    START = "start"
    AGGREGATE_USAGE = "aggregate_usage"
    WRITE_PENDING_LEDGER = "write_pending_ledger"
    DISPATCH_CHARGES = "dispatch_charges"
    WRITE_RECONCILIATION = "write_reconciliation"
    REPORT = "report"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_STATES = {RunState.DONE, RunState.SKIPPED, RunState.FAILED}


@dataclass
class ErrorDetails:
    message: str
    timestamp: str
    stack: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "timestamp": self.timestamp,
            "stack": self.stack,
            "stage": self.stage,
        }


@dataclass
class RunReport:
    """Outcome of one billing run (or preview)."""
    run_id: str
    target_date: date
    state: RunState = RunState.START
    dry_run: bool = False
    scheduled: Optional[bool] = None
    skip_reason: Optional[str] = None
    active_tenants: int = 0
    tenants_with_usage: int = 0
    records: List[BillingRecord] = field(default_factory=list)
    outcomes: List[ChargeOutcome] = field(default_factory=list)
    reconciliation_written: Optional[bool] = None
    warnings: List[str] = field(default_factory=list)
    error_details: Optional[ErrorDetails] = None
    states: List[RunState] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: Optional[str] = None

    def transition(self, state: RunState) -> None:
        self.state = state
        self.states.append(state)
        if state in TERMINAL_STATES:
            self.finished_at = datetime.now(timezone.utc).isoformat()

    @property
    def success(self) -> bool:
        """Run-level success; individual tenants may still have failed."""
        return self.state in (RunState.DONE, RunState.SKIPPED)

    @property
    def skipped(self) -> bool:
        return self.state == RunState.SKIPPED

    @property
    def billing_records_generated(self) -> int:
        return len(self.records)

    @property
    def total_units(self) -> int:
        return sum(r.unit_count for r in self.records)

    @property
    def total_amount(self) -> Decimal:
        return sum((r.billing_amount for r in self.records), Decimal("0.00"))

    def charge_summary(self) -> Dict[str, int]:
        return {
            status.value: sum(1 for o in self.outcomes if o.status == status)
            for status in OutcomeStatus
        }

    @property
    def message(self) -> str:
        if self.state == RunState.FAILED:
            return "Billing process failed"
        if self.state == RunState.SKIPPED:
            return f"Billing skipped: {self.skip_reason}"
        if self.dry_run:
            return f"Test billing completed for date: {self.target_date.isoformat()}"
        failed = self.charge_summary()[OutcomeStatus.FAILED.value]
        if failed or self.reconciliation_written is False:
            return "Billing process completed with partial failures"
        return "Billing process completed successfully"

    def tenant_results(self) -> List[Dict[str, Any]]:
        """Per-tenant view joining ledger records with charge outcomes."""
        by_tenant = {o.tenant_key: o for o in self.outcomes}
        results = []
        for record in self.records:
            outcome = by_tenant.get(record.tenant_key)
            results.append({
                "tenantKey": record.tenant_key,
                "unitCount": record.unit_count,
                "billingAmount": float(record.billing_amount),
                "chargeStatus": outcome.status.value if outcome else "pending",
                "chargeId": outcome.charge_id if outcome else None,
                "error": outcome.error_message if outcome else None,
            })
        return results

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "runId": self.run_id,
            "state": self.state.value,
            "dryRun": self.dry_run,
            "scheduled": self.scheduled,
            "timestamp": self.finished_at or datetime.now(timezone.utc).isoformat(),
            "error": self.error_details.message if self.error_details else None,
            "billingDetails": {
                "targetDate": self.target_date.isoformat(),
                "skipped": self.skipped,
                "skipReason": self.skip_reason,
                "activeTenants": self.active_tenants,
                "tenantsWithUsage": self.tenants_with_usage,
                "billingRecordsGenerated": self.billing_records_generated,
                "totalUnits": self.total_units,
                "totalAmount": float(self.total_amount),
                "chargeSummary": self.charge_summary(),
                "reconciliationWritten": self.reconciliation_written,
                "tenantResults": self.tenant_results(),
                "warnings": list(self.warnings),
                "errorDetails": self.error_details.to_dict() if self.error_details else None,
                "states": [s.value for s in self.states],
                "startedAt": self.started_at,
            },
        }
