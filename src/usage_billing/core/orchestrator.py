"""
Billing Orchestrator

Sequences one daily billing run:

    Start -> AggregateUsage -> WritePendingLedger -> DispatchCharges
          -> WriteReconciliation -> Report -> Done

Terminal Failed is reached from AggregateUsage, WritePendingLedger, or any
unexpected error before dispatch. Terminal Skipped is reached when there are no
active tenants (or the date is already billed and the guard is enabled).
Dispatch and reconciliation problems are captured into the report and the run
still completes.
"""

import traceback
import uuid
from datetime import date, datetime, timezone
from typing import Dict, Optional

import structlog

from ..config import BillingConfig, default_target_date
from ..persistence.repository import LedgerStore
from .aggregator import UsageAggregator
from .dispatcher import ChargeDispatcher
from .models import ChargeOutcome, OutcomeStatus, TenantIdentity
from .reconciliation import ReconciliationWriter
from .report import ErrorDetails, RunReport, RunState

logger = structlog.get_logger()

NO_ACTIVE_TENANTS = "No active tenants found"
ALREADY_BILLED = "Billing already recorded for this date"


class BillingOrchestrator:
    """Runs the billing state machine against injected collaborators."""

    def __init__(
        self,
        config: BillingConfig,
        analytics,
        ledger: LedgerStore,
        dispatcher: ChargeDispatcher,
        notifier=None,
        aggregator: Optional[UsageAggregator] = None,
        reconciliation: Optional[ReconciliationWriter] = None,
    ):
        self.config = config
        self.analytics = analytics
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.aggregator = aggregator or UsageAggregator(config.rate_per_million)
        self.reconciliation = reconciliation or ReconciliationWriter(ledger)

    async def run(
        self,
        target_date: Optional[date] = None,
        scheduled: Optional[bool] = None,
    ) -> RunReport:
        """
        Execute a full billing run for one date.

        Args:
            target_date: Date to bill (defaults to yesterday in the billing timezone)
            scheduled: Whether the run was started by the scheduler

        Returns:
            RunReport in a terminal state (Done, Skipped or Failed)
        """
        report = RunReport(
            run_id=str(uuid.uuid4()),
            target_date=target_date or default_target_date(self.config),
            scheduled=scheduled,
        )
        report.transition(RunState.START)
        log = logger.bind(run_id=report.run_id, target_date=report.target_date.isoformat())
        log.info("billing_run_started", scheduled=scheduled)

        try:
            await self._execute(report, log)
        except Exception as e:
            self._fail(report, e, log)

        await self._notify(report, log)
        return report

    async def preview(self, target_date: Optional[date] = None) -> RunReport:
        """
        Dry run: aggregate and price usage without writing or charging.

        The preview report is still delivered to the notification channel.
        """
        report = RunReport(
            run_id=str(uuid.uuid4()),
            target_date=target_date or default_target_date(self.config),
            dry_run=True,
        )
        report.transition(RunState.START)
        log = logger.bind(run_id=report.run_id, target_date=report.target_date.isoformat(), dry_run=True)
        log.info("billing_preview_started")

        try:
            tenants = await self._aggregate(report, log)
            if tenants:
                report.transition(RunState.REPORT)
                report.transition(RunState.DONE)
        except Exception as e:
            self._fail(report, e, log)

        await self._notify(report, log)
        return report

    async def aclose(self) -> None:
        """Close the charge provider and notifier clients."""
        await self.dispatcher.provider.aclose()
        notifier_close = getattr(self.notifier, "aclose", None)
        if notifier_close is not None:
            await notifier_close()

    async def _execute(self, report: RunReport, log) -> None:
        if self.config.skip_billed_dates and await self._already_billed(report.target_date):
            self._skip(report, ALREADY_BILLED, log)
            return

        tenants = await self._aggregate(report, log)
        if not tenants:
            return

        report.transition(RunState.WRITE_PENDING_LEDGER)
        await self.ledger.insert(report.records)
        log.info("pending_ledger_written", records=len(report.records))

        report.transition(RunState.DISPATCH_CHARGES)
        try:
            report.outcomes = await self.dispatcher.dispatch(report.records, tenants)
        except Exception as e:
            log.error("charge_dispatch_failed", error=str(e))
            report.warnings.append(f"Charge dispatch failed: {e}")
            report.outcomes = [
                ChargeOutcome(
                    tenant_key=r.tenant_key,
                    status=OutcomeStatus.FAILED,
                    billing_amount=r.billing_amount,
                    error_message=str(e) or type(e).__name__,
                )
                for r in report.records
            ]

        report.transition(RunState.WRITE_RECONCILIATION)
        result = await self.reconciliation.write(report.records, report.outcomes)
        report.reconciliation_written = result.written
        if not result.written:
            report.warnings.append(f"Reconciliation write failed: {result.error}")

        report.transition(RunState.REPORT)
        report.transition(RunState.DONE)
        log.info(
            "billing_run_completed",
            records=report.billing_records_generated,
            total_amount=str(report.total_amount),
            reconciliation_written=report.reconciliation_written,
            **report.charge_summary(),
        )

    async def _aggregate(self, report: RunReport, log) -> Optional[Dict[str, TenantIdentity]]:
        """
        AggregateUsage stage. Fills report.records and returns the tenant
        snapshot keyed by tenant_key, or None when the run was skipped.
        """
        report.transition(RunState.AGGREGATE_USAGE)

        tenants = await self.analytics.list_active_tenants()
        report.active_tenants = len(tenants)
        if not tenants:
            self._skip(report, NO_ACTIVE_TENANTS, log)
            return None

        usage = await self.analytics.get_usage_counts(report.target_date)
        report.tenants_with_usage = len({u.tenant_key for u in usage if u.unit_count > 0})
        report.records = self.aggregator.aggregate(
            report.target_date,
            tenants,
            usage,
            run_id=report.run_id,
        )
        return {t.tenant_key: t for t in tenants}

    async def _already_billed(self, target_date: date) -> bool:
        rows = await self.ledger.read_by_date(target_date)
        return len(rows) > 0

    def _skip(self, report: RunReport, reason: str, log) -> None:
        report.skip_reason = reason
        report.transition(RunState.SKIPPED)
        log.info("billing_run_skipped", reason=reason)

    def _fail(self, report: RunReport, error: Exception, log) -> None:
        stage = report.state.value
        report.error_details = ErrorDetails(
            message=str(error) or type(error).__name__,
            timestamp=datetime.now(timezone.utc).isoformat(),
            stack=traceback.format_exc(),
            stage=stage,
        )
        report.transition(RunState.FAILED)
        log.error("billing_run_failed", stage=stage, error=str(error), error_type=type(error).__name__)

    async def _notify(self, report: RunReport, log) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send(report)
        except Exception as e:
            log.error("notification_failed", error=str(e))
