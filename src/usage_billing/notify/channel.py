"""
Notification Channels

A channel renders and delivers a RunReport after each run. Delivery happens
after the run outcome is fixed; a failed delivery never changes it.
"""

from abc import ABC, abstractmethod

import structlog

from ..core.report import RunReport

logger = structlog.get_logger()


class NotificationChannel(ABC):
    """Abstract destination for run reports."""

    @abstractmethod
    async def send(self, report: RunReport) -> None:
        """Deliver a report. May raise; callers contain the failure."""
        pass


class LogNotifier(NotificationChannel):
    """Writes the report summary to the structured log."""

    async def send(self, report: RunReport) -> None:
        logger.info(
            "billing_run_report",
            run_id=report.run_id,
            success=report.success,
            state=report.state.value,
            message=report.message,
            target_date=report.target_date.isoformat(),
            billing_records=report.billing_records_generated,
            total_amount=str(report.total_amount),
            charges=report.charge_summary(),
        )
