"""
Retry Policy for Charge Dispatch

Which failures are worth retrying is an explicit table keyed by error class.
Backoff is exponential: base_delay, 2 * base_delay, 4 * base_delay, ...
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Type

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..billing.errors import (
    ChargeAuthError,
    ChargeError,
    ChargeNetworkError,
    ChargeNotFoundError,
    ChargeRateLimitError,
    ChargeRequestError,
    ChargeServerError,
    ChargeTimeoutError,
)

logger = structlog.get_logger()

SleepFn = Callable[[float], Awaitable[None]]

RETRYABLE_ERRORS: Dict[Type[BaseException], bool] = {
    ChargeTimeoutError: True,
    ChargeNetworkError: True,
    ChargeRateLimitError: True,
    ChargeServerError: True,
    ChargeAuthError: False,
    ChargeNotFoundError: False,
    ChargeRequestError: False,
    ChargeError: False,
}


def is_retryable(exc: BaseException) -> bool:
    """
    Look up an exception in RETRYABLE_ERRORS by its class hierarchy.

    Exceptions outside the table (programming errors, unexpected payloads)
    are never retried.
    """
    for cls in type(exc).__mro__:
        if cls in RETRYABLE_ERRORS:
            return RETRYABLE_ERRORS[cls]
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff for one tenant's charge procedure."""
    max_attempts: int = 3
    base_delay: float = 1.0

    def delays(self) -> List[float]:
        """Sleeps between attempts when every attempt fails transiently."""
        return [self.base_delay * (2 ** n) for n in range(self.max_attempts - 1)]

    def retrying(self, sleep: Optional[SleepFn] = None, tenant_key: str = "") -> AsyncRetrying:
        """Build a tenacity controller for one procedure."""

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "charge_retry_scheduled",
                tenant=tenant_key,
                attempt=state.attempt_number,
                max_attempts=self.max_attempts,
                delay_seconds=state.next_action.sleep if state.next_action else None,
                error=str(exc),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=0),
            retry=retry_if_exception(is_retryable),
            sleep=sleep or asyncio.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
