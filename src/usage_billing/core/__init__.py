"""
Usage Billing Rail - Core Module

Aggregation, retry policy, reconciliation and run reports. The dispatcher and
orchestrator depend on the billing package and are imported from their modules:

    from usage_billing.core.dispatcher import ChargeDispatcher
    from usage_billing.core.orchestrator import BillingOrchestrator
"""

from .models import TenantIdentity, UsageCount, OutcomeStatus, ChargeOutcome
from .aggregator import UsageAggregator, calculate_billing_amount
from .retry import RetryPolicy, RETRYABLE_ERRORS, is_retryable
from .reconciliation import ReconciliationWriter, ReconciliationResult
from .report import RunReport, RunState, ErrorDetails

__all__ = [
    "TenantIdentity",
    "UsageCount",
    "OutcomeStatus",
    "ChargeOutcome",
    "UsageAggregator",
    "calculate_billing_amount",
    "RetryPolicy",
    "RETRYABLE_ERRORS",
    "is_retryable",
    "ReconciliationWriter",
    "ReconciliationResult",
    "RunReport",
    "RunState",
    "ErrorDetails",
]
