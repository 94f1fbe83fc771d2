"""
Billing Run Configuration

One immutable BillingConfig is built per run and passed down explicitly to every
component. Nothing below the entry points reads the environment.
"""

import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class ConfigError(ValueError):
    """Raised when the billing configuration is invalid."""
    pass


_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class BillingConfig:
    """Settings for a single billing run."""
    rate_per_million: Decimal = Decimal("10.00")  # USD per 1M units
    concurrency: int = 5  # max charge procedures in flight
    max_retries: int = 3  # total attempts per tenant
    retry_base_delay: float = 1.0  # seconds, doubled each attempt
    api_timeout_seconds: float = 30.0
    timezone: str = "Asia/Tokyo"
    currency: str = "USD"
    charge_description: str = "Web pixel usage charges"
    usage_event_name: str = "page_viewed"
    shopify_api_version: str = "2024-01"
    skip_billed_dates: bool = False
    database_url: str = "sqlite:///usage_billing.db"

    def __post_init__(self):
        if not isinstance(self.rate_per_million, Decimal):
            object.__setattr__(self, "rate_per_million", _to_decimal(self.rate_per_million))
        if self.rate_per_million < 0:
            raise ConfigError("rate_per_million must be >= 0")
        if self.concurrency < 1:
            raise ConfigError("concurrency must be >= 1")
        if self.max_retries < 1:
            raise ConfigError("max_retries must be >= 1")
        if self.retry_base_delay < 0:
            raise ConfigError("retry_base_delay must be >= 0")
        if self.api_timeout_seconds <= 0:
            raise ConfigError("api_timeout_seconds must be > 0")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"Unknown timezone: {self.timezone}")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "BillingConfig":
        """
        Build configuration from environment variables.

        Unset variables fall back to the dataclass defaults.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        try:
            return cls(
                rate_per_million=_to_decimal(env.get("RATE_PER_MILLION", defaults.rate_per_million)),
                concurrency=int(env.get("BATCH_SIZE", defaults.concurrency)),
                max_retries=int(env.get("MAX_RETRIES", defaults.max_retries)),
                retry_base_delay=float(env.get("RETRY_BASE_DELAY_SECONDS", defaults.retry_base_delay)),
                api_timeout_seconds=float(env.get("API_TIMEOUT_SECONDS", defaults.api_timeout_seconds)),
                timezone=env.get("BILLING_TIMEZONE", defaults.timezone),
                currency=env.get("BILLING_CURRENCY", defaults.currency),
                charge_description=env.get("CHARGE_DESCRIPTION", defaults.charge_description),
                usage_event_name=env.get("USAGE_EVENT_NAME", defaults.usage_event_name),
                shopify_api_version=env.get("SHOPIFY_API_VERSION", defaults.shopify_api_version),
                skip_billed_dates=str(env.get("SKIP_BILLED_DATES", "false")).lower() in _TRUE_VALUES,
                database_url=env.get("DATABASE_URL", defaults.database_url),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid billing configuration: {e}")

    def describe_charge(self, billing_date: date) -> str:
        """Charge description, stable for every attempt on the same date."""
        return f"{self.charge_description} - {billing_date.isoformat()}"


def _to_decimal(value) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(f"Invalid decimal value: {value!r}")


def default_target_date(config: BillingConfig, now: Optional[datetime] = None) -> date:
    """
    Date to bill when no explicit date is given.

    The job runs shortly after midnight local time, so it bills the previous
    calendar day in the configured timezone.
    """
    tz = ZoneInfo(config.timezone)
    current = now.astimezone(tz) if now else datetime.now(tz)
    return (current - timedelta(days=1)).date()


def parse_billing_date(value: str) -> date:
    """Parse a YYYY-MM-DD date string."""
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid date (expected YYYY-MM-DD): {value!r}")
