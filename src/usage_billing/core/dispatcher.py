"""
Charge Dispatcher

Issues one logical charge per billable tenant against the charge provider.

Guarantees:
- At most `concurrency` charge procedures are in flight at any time.
- Zero-amount tenants are skipped without a network call.
- Each tenant's failure is caught and classified inside its own task; no
  exception escapes to cancel or delay sibling tenants.
- One outcome is returned per submitted record, in submission order.
"""

import asyncio
from typing import Awaitable, Dict, List, Mapping, Optional, Sequence, TypeVar

import structlog

from ..billing.errors import ChargeTimeoutError
from ..billing.provider import ChargeProvider
from ..config import BillingConfig
from ..persistence.models import BillingRecord
from .models import ChargeOutcome, OutcomeStatus, TenantIdentity
from .retry import RetryPolicy, SleepFn

logger = structlog.get_logger()

T = TypeVar("T")

NO_BILLABLE_LINE = "No active usage-based subscription found"
UNKNOWN_TENANT = "Tenant identity not available for dispatch"


class ChargeDispatcher:
    """Bounded-concurrency, retrying caller of a ChargeProvider."""

    def __init__(
        self,
        provider: ChargeProvider,
        config: BillingConfig,
        sleep: Optional[SleepFn] = None,
    ):
        self.provider = provider
        self.config = config
        self.retry_policy = RetryPolicy(
            max_attempts=config.max_retries,
            base_delay=config.retry_base_delay,
        )
        self._sleep = sleep

    async def dispatch(
        self,
        records: Sequence[BillingRecord],
        tenants: Mapping[str, TenantIdentity],
    ) -> List[ChargeOutcome]:
        """
        Charge every record with a positive amount.

        Args:
            records: Pending ledger records, one per tenant
            tenants: Identities keyed by tenant_key (credentials for the calls)

        Returns:
            One ChargeOutcome per record, in the same order
        """
        semaphore = asyncio.Semaphore(self.config.concurrency)
        logger.info(
            "charge_dispatch_started",
            records=len(records),
            concurrency=self.config.concurrency,
        )

        async def _bounded(record: BillingRecord) -> ChargeOutcome:
            if record.billing_amount <= 0:
                return ChargeOutcome(
                    tenant_key=record.tenant_key,
                    status=OutcomeStatus.SKIPPED,
                    billing_amount=record.billing_amount,
                )

            tenant = tenants.get(record.tenant_key)
            if tenant is None:
                return ChargeOutcome(
                    tenant_key=record.tenant_key,
                    status=OutcomeStatus.FAILED,
                    billing_amount=record.billing_amount,
                    error_message=UNKNOWN_TENANT,
                )

            async with semaphore:
                return await self._charge_tenant(tenant, record)

        outcomes = await asyncio.gather(*(_bounded(r) for r in records))

        summary = _summarize(outcomes)
        logger.info("charge_dispatch_completed", **summary)
        return list(outcomes)

    async def _charge_tenant(self, tenant: TenantIdentity, record: BillingRecord) -> ChargeOutcome:
        """Run one tenant's procedure; never raises."""
        attempts = 0
        description = self.config.describe_charge(record.billing_date)

        try:
            async for attempt in self.retry_policy.retrying(self._sleep, tenant.tenant_key):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    line = await self._call(self.provider.find_billable_line(tenant))
                    if line is None:
                        logger.warning("charge_no_billable_line", tenant=tenant.tenant_key)
                        return ChargeOutcome(
                            tenant_key=tenant.tenant_key,
                            status=OutcomeStatus.FAILED,
                            billing_amount=record.billing_amount,
                            error_message=NO_BILLABLE_LINE,
                            attempts=attempts,
                        )

                    charge_id = await self._call(
                        self.provider.create_charge(tenant, line, record.billing_amount, description)
                    )

            logger.info(
                "charge_succeeded",
                tenant=tenant.tenant_key,
                charge_id=charge_id,
                amount=str(record.billing_amount),
                attempts=attempts,
            )
            return ChargeOutcome(
                tenant_key=tenant.tenant_key,
                status=OutcomeStatus.SUCCESS,
                billing_amount=record.billing_amount,
                charge_id=charge_id,
                attempts=attempts,
            )

        except Exception as e:
            logger.error(
                "charge_failed",
                tenant=tenant.tenant_key,
                attempts=attempts,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ChargeOutcome(
                tenant_key=tenant.tenant_key,
                status=OutcomeStatus.FAILED,
                billing_amount=record.billing_amount,
                error_message=str(e) or type(e).__name__,
                attempts=attempts,
            )

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Await a provider call under the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.api_timeout_seconds)
        except asyncio.TimeoutError:
            raise ChargeTimeoutError(
                f"Charge provider call timed out after {self.config.api_timeout_seconds}s"
            )


def _summarize(outcomes: Sequence[ChargeOutcome]) -> Dict[str, int]:
    return {
        "successful": sum(1 for o in outcomes if o.status == OutcomeStatus.SUCCESS),
        "failed": sum(1 for o in outcomes if o.status == OutcomeStatus.FAILED),
        "skipped": sum(1 for o in outcomes if o.status == OutcomeStatus.SKIPPED),
    }
