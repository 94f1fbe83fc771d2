"""
Usage Billing Rail - Billing Module

Charge providers and the charge error taxonomy.
- ChargeProvider: abstract find-line / create-charge procedure
- ShopifyChargeProvider: Shopify Admin GraphQL usage records
"""

from .errors import (
    ChargeError,
    ChargeAuthError,
    ChargeRateLimitError,
    ChargeServerError,
    ChargeNotFoundError,
    ChargeRequestError,
    ChargeTimeoutError,
    ChargeNetworkError,
)
from .provider import BillableLine, ChargeProvider
from .shopify import ShopifyChargeProvider

__all__ = [
    "ChargeError",
    "ChargeAuthError",
    "ChargeRateLimitError",
    "ChargeServerError",
    "ChargeNotFoundError",
    "ChargeRequestError",
    "ChargeTimeoutError",
    "ChargeNetworkError",
    "BillableLine",
    "ChargeProvider",
    "ShopifyChargeProvider",
]
