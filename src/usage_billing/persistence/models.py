"""
Data Models for the Billing Ledger

A BillingRecord is one immutable ledger row. Status changes are recorded by
appending a new row for the same (tenant_key, billing_date), never by updating.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import uuid


class ChargeStatus(Enum):
    """Billing status persisted on a ledger row."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class LedgerPhase(Enum):
    """Which stage of a run wrote the row."""
    PENDING = "pending"
    RECONCILIATION = "reconciliation"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_iso(value: Any) -> Optional[str]:
    # PostgreSQL hands TIMESTAMPTZ columns back as datetime objects
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class BillingRecord:
    """A single billing ledger entry for one tenant and one date."""
    tenant_key: str
    billing_date: date
    unit_count: int
    billing_amount: Decimal
    rate_per_million: Decimal
    charge_status: ChargeStatus = ChargeStatus.PENDING
    charge_id: Optional[str] = None
    charge_error_message: Optional[str] = None
    charge_processed_at: Optional[str] = None
    phase: LedgerPhase = LedgerPhase.PENDING
    run_id: Optional[str] = None
    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    inserted_at: str = field(default_factory=_utcnow)

    @property
    def key(self) -> tuple:
        return (self.tenant_key, self.billing_date)

    def with_outcome(
        self,
        charge_status: ChargeStatus,
        charge_id: Optional[str] = None,
        charge_error_message: Optional[str] = None,
        charge_processed_at: Optional[str] = None,
    ) -> "BillingRecord":
        """New reconciliation-phase record carrying a charge outcome."""
        return replace(
            self,
            charge_status=charge_status,
            charge_id=charge_id,
            charge_error_message=charge_error_message,
            charge_processed_at=charge_processed_at,
            phase=LedgerPhase.RECONCILIATION,
            record_id=str(uuid.uuid4()),
            inserted_at=_utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "tenantKey": self.tenant_key,
            "billingDate": self.billing_date.isoformat(),
            "unitCount": self.unit_count,
            "billingAmount": float(self.billing_amount),
            "ratePerMillionUnits": float(self.rate_per_million),
            "chargeStatus": self.charge_status.value,
            "chargeId": self.charge_id,
            "chargeErrorMessage": self.charge_error_message,
            "chargeProcessedAt": self.charge_processed_at,
            "phase": self.phase.value,
            "runId": self.run_id,
            "insertedAt": self.inserted_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.record_id,
            self.tenant_key,
            self.billing_date.isoformat(),
            self.unit_count,
            str(self.billing_amount),
            str(self.rate_per_million),
            self.charge_status.value,
            self.charge_id,
            self.charge_error_message,
            self.charge_processed_at,
            self.phase.value,
            self.run_id,
            self.inserted_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BillingRecord":
        billing_date = row["billing_date"]
        if isinstance(billing_date, str):
            billing_date = date.fromisoformat(billing_date)

        return cls(
            record_id=row["record_id"],
            tenant_key=row["tenant_key"],
            billing_date=billing_date,
            unit_count=int(row["unit_count"]),
            billing_amount=Decimal(str(row["billing_amount"])),
            rate_per_million=Decimal(str(row["rate_per_million"])),
            charge_status=ChargeStatus(row.get("charge_status") or "pending"),
            charge_id=row.get("charge_id"),
            charge_error_message=row.get("charge_error_message"),
            charge_processed_at=_as_iso(row.get("charge_processed_at")),
            phase=LedgerPhase(row.get("phase") or "pending"),
            run_id=row.get("run_id"),
            inserted_at=_as_iso(row["inserted_at"]),
        )
