"""
Process Bootstrap

Logging setup and production wiring of the billing orchestrator. Entry points
(HTTP server, CLI) call these; library code only uses structlog.get_logger().
"""

import logging
import os
import sys
from typing import Optional

import structlog

from .billing.shopify import ShopifyChargeProvider
from .config import BillingConfig
from .core.dispatcher import ChargeDispatcher
from .core.orchestrator import BillingOrchestrator
from .notify.channel import LogNotifier, NotificationChannel
from .notify.slack import SlackNotifier
from .persistence.database import Database, get_database
from .persistence.repository import LedgerRepository
from .sources.analytics import DatabaseAnalyticsSource

logger = structlog.get_logger()


def _stderr_logger(*args) -> structlog.PrintLogger:
    # sys.stderr is looked up per call; stdout is reserved for command output
    return structlog.PrintLogger(sys.stderr)


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure structlog for the process.

    LOG_LEVEL (default INFO) and LOG_FORMAT ("json" or "console") are read
    from the environment when not given.
    """
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    fmt = (fmt or os.environ.get("LOG_FORMAT", "console")).lower()

    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )


def build_notifier() -> NotificationChannel:
    """Slack when a bot token is configured, the structured log otherwise."""
    if os.environ.get("SLACK_BOT_TOKEN"):
        return SlackNotifier()
    logger.info("slack_not_configured", fallback="log")
    return LogNotifier()


def build_orchestrator(
    config: Optional[BillingConfig] = None,
    db: Optional[Database] = None,
    notifier: Optional[NotificationChannel] = None,
) -> BillingOrchestrator:
    """Wire the production collaborators for one billing run."""
    config = config or BillingConfig.from_env()
    db = db or get_database(config.database_url)
    db.initialize()

    provider = ShopifyChargeProvider(
        api_version=config.shopify_api_version,
        currency=config.currency,
        timeout=config.api_timeout_seconds,
    )

    return BillingOrchestrator(
        config=config,
        analytics=DatabaseAnalyticsSource(db, event_name=config.usage_event_name),
        ledger=LedgerRepository(db),
        dispatcher=ChargeDispatcher(provider, config),
        notifier=notifier or build_notifier(),
    )
