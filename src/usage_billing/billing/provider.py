"""
Charge Provider Interface

A charge provider resolves the line a tenant is billed against and creates
usage charges on it. Implementations raise the categorized errors in
billing.errors so the dispatcher can decide what to retry.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..core.models import TenantIdentity


@dataclass(frozen=True)
class BillableLine:
    """Reference to the subscription line a usage charge is booked on."""
    line_id: str
    tenant_key: str


class ChargeProvider(ABC):
    """Abstract charge-creation API."""

    @abstractmethod
    async def find_billable_line(self, tenant: TenantIdentity) -> Optional[BillableLine]:
        """Return the tenant's usage-billed line, or None if it has none."""
        pass

    @abstractmethod
    async def create_charge(
        self,
        tenant: TenantIdentity,
        line: BillableLine,
        amount: Decimal,
        description: str,
    ) -> str:
        """Create a usage charge and return its identifier."""
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None
