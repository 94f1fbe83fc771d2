"""
Slack Notification Channel

Posts a block-kit summary of each run to one or more Slack channels through the
chat.postMessage Web API.
"""

import os
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from ..core.report import RunReport, RunState
from .channel import NotificationChannel

logger = structlog.get_logger()

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
DUMMY_TOKEN = "dummy-token-for-startup"
MAX_TENANTS_TO_SHOW = 10

STATUS_ICONS = {
    "success": ":white_check_mark:",
    "failed": ":x:",
    "skipped": ":fast_forward:",
    "pending": ":hourglass:",
}


class SlackNotificationError(Exception):
    """Raised when Slack rejects a message."""
    pass


class SlackNotifier(NotificationChannel):
    """Delivers run reports to Slack."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        channel_ids: Optional[Sequence[str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            bot_token: Slack bot token (or SLACK_BOT_TOKEN env var)
            channel_ids: Target channels (or comma-separated SLACK_CHANNEL_IDS env var)
            timeout: Per-request timeout in seconds
            client: Optional preconfigured HTTP client
        """
        self.bot_token = bot_token or os.environ.get("SLACK_BOT_TOKEN")
        if channel_ids is None:
            raw = os.environ.get("SLACK_CHANNEL_IDS") or os.environ.get("SLACK_CHANNEL_ID") or ""
            channel_ids = [c.strip() for c in raw.split(",") if c.strip()]
        self.channel_ids = list(channel_ids)

        if not self.bot_token:
            raise ValueError("SLACK_BOT_TOKEN is required")
        if not self.channel_ids:
            raise ValueError("SLACK_CHANNEL_IDS is required")

        self.is_dummy_token = self.bot_token == DUMMY_TOKEN
        if self.is_dummy_token:
            logger.warning("slack_dummy_token", detail="Slack notifications disabled")

        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, report: RunReport) -> None:
        if self.is_dummy_token:
            logger.info("slack_notification_skipped", reason="dummy_token", message=report.message)
            return

        payload_base = {
            "blocks": build_blocks(report),
            "text": "Billing batch completed" if report.success else "Billing batch failed",
        }

        for channel in self.channel_ids:
            response = await self._client.post(
                SLACK_POST_MESSAGE_URL,
                json={"channel": channel, **payload_base},
                headers={"Authorization": f"Bearer {self.bot_token}"},
            )
            response.raise_for_status()
            body = response.json()
            if not body.get("ok", False):
                raise SlackNotificationError(f"Slack rejected message for {channel}: {body.get('error')}")

        logger.info("slack_notification_sent", channels=len(self.channel_ids), run_id=report.run_id)

    async def aclose(self) -> None:
        await self._client.aclose()


def _field(label: str, value: Any) -> Dict[str, str]:
    return {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}


def _section_text(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def build_blocks(report: RunReport) -> List[Dict[str, Any]]:
    """Render a RunReport as Slack blocks."""
    data = report.to_dict()
    details = data["billingDetails"]

    blocks: List[Dict[str, Any]] = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": ":white_check_mark: Billing batch completed" if report.success
                else ":x: Billing batch failed",
            },
        },
        {
            "type": "section",
            "fields": [
                _field("Status", "Success" if report.success else "Failure"),
                _field("Run time", data["timestamp"]),
            ],
        },
        _section_text(f"*Message:*\n{report.message}"),
        {
            "type": "section",
            "fields": [
                _field("Target date", details["targetDate"]),
                _field("Result", ":fast_forward: Skipped" if report.skipped else ":white_check_mark: Executed"),
            ],
        },
    ]

    if report.scheduled is not None:
        blocks.append(_section_text(f"*Trigger:*\n{'Scheduled' if report.scheduled else 'Manual'}"))

    if report.skipped and report.skip_reason:
        blocks.append(_section_text(f"*Skip reason:*\n{report.skip_reason}"))

    if not report.skipped and report.state != RunState.FAILED:
        blocks.append({
            "type": "section",
            "fields": [
                _field("Active tenants", f"{details['activeTenants']:,}"),
                _field("Tenants with usage", f"{details['tenantsWithUsage']:,}"),
            ],
        })
        blocks.append({
            "type": "section",
            "fields": [
                _field("Billing records", f"{details['billingRecordsGenerated']:,}"),
                _field("Total units", f"{details['totalUnits']:,}"),
            ],
        })
        blocks.append(_section_text(f"*Total amount:*\n${details['totalAmount']:,.2f}"))

        if report.outcomes:
            summary = details["chargeSummary"]
            blocks.append(_section_text(
                "*Charge results:*\n"
                f"{STATUS_ICONS['success']} Success: {summary['success']}\n"
                f"{STATUS_ICONS['failed']} Failed: {summary['failed']}\n"
                f"{STATUS_ICONS['skipped']} Skipped: {summary['skipped']}"
            ))

        active = [t for t in details["tenantResults"] if t["unitCount"] > 0 or t["chargeStatus"] == "failed"]
        if active:
            blocks.append({"type": "divider"})
            lines = []
            for tenant in active[:MAX_TENANTS_TO_SHOW]:
                icon = STATUS_ICONS.get(tenant["chargeStatus"], ":grey_question:")
                line = (
                    f"*{tenant['tenantKey']}*\n"
                    f"{tenant['unitCount']:,} units / ${tenant['billingAmount']:.2f}\n"
                    f"{icon} {tenant['chargeStatus']}"
                )
                if tenant["error"]:
                    line += f"\n:red_circle: {tenant['error']}"
                lines.append(line)
            blocks.append(_section_text("\n\n".join(lines)))

            if len(active) > MAX_TENANTS_TO_SHOW:
                blocks.append(_section_text(f"_... {len(active) - MAX_TENANTS_TO_SHOW} more tenants omitted_"))

    if report.warnings:
        blocks.append(_section_text("*Warnings:*\n" + "\n".join(report.warnings)))

    if report.error_details:
        blocks.append(_section_text(f"*Error details:*\n```{report.error_details.message}```"))

    return blocks
