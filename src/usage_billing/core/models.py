"""
Domain Objects for a Billing Run

Identities and usage are read-only snapshots taken at the start of a run.
Charge outcomes live only in memory and are persisted through the ledger.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class TenantIdentity:
    """A billable tenant and the credential used for its charge calls."""
    tenant_key: str
    access_credential: str
    registered_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __repr__(self) -> str:
        # Keep credentials out of logs and tracebacks
        return f"TenantIdentity(tenant_key={self.tenant_key!r})"


@dataclass(frozen=True)
class UsageCount:
    """Units consumed by one tenant on one date."""
    tenant_key: str
    unit_count: int


class OutcomeStatus(Enum):
    """Result of dispatching one tenant's charge."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ChargeOutcome:
    """What happened when a tenant's charge was dispatched."""
    tenant_key: str
    status: OutcomeStatus
    billing_amount: Decimal
    charge_id: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenantKey": self.tenant_key,
            "status": self.status.value,
            "billingAmount": float(self.billing_amount),
            "chargeId": self.charge_id,
            "error": self.error_message,
            "attempts": self.attempts,
        }
