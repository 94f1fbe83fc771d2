"""
Usage Aggregation

Joins tenant identities with daily usage counts and prices them against a single
linear rate. Pure: no I/O, no clock reads beyond record timestamps.
"""

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from ..persistence.models import BillingRecord
from .models import TenantIdentity, UsageCount

UNITS_PER_RATE_BLOCK = Decimal(1_000_000)
CENT = Decimal("0.01")


def calculate_billing_amount(unit_count: int, rate_per_million) -> Decimal:
    """
    Price a unit count at a per-million rate, rounded half-up to the cent.

    calculate_billing_amount(1_000_000, 10) == Decimal("10.00")
    calculate_billing_amount(1, 10) == Decimal("0.00")
    """
    if unit_count < 0:
        raise ValueError("unit_count must be >= 0")
    rate = rate_per_million if isinstance(rate_per_million, Decimal) else Decimal(str(rate_per_million))
    amount = (Decimal(unit_count) / UNITS_PER_RATE_BLOCK) * rate
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class UsageAggregator:
    """Builds one pending BillingRecord per tenant."""

    def __init__(self, rate_per_million: Decimal):
        self.rate_per_million = rate_per_million

    def aggregate(
        self,
        billing_date: date,
        tenants: Iterable[TenantIdentity],
        usage: Iterable[UsageCount],
        run_id: Optional[str] = None,
    ) -> List[BillingRecord]:
        """
        Produce one pending record per tenant.

        Tenants without a usage row are billed for zero units. Usage rows for
        tenants outside the identity snapshot are ignored, and a tenant listed
        twice is billed once.
        """
        counts: Dict[str, int] = {}
        for row in usage:
            counts[row.tenant_key] = counts.get(row.tenant_key, 0) + row.unit_count

        records: List[BillingRecord] = []
        seen = set()
        for tenant in tenants:
            if tenant.tenant_key in seen:
                continue
            seen.add(tenant.tenant_key)

            units = counts.get(tenant.tenant_key, 0)
            records.append(BillingRecord(
                tenant_key=tenant.tenant_key,
                billing_date=billing_date,
                unit_count=units,
                billing_amount=calculate_billing_amount(units, self.rate_per_million),
                rate_per_million=self.rate_per_million,
                run_id=run_id,
            ))
        return records
