"""
Shopify Charge Provider

Books daily usage charges on a shop's usage-based app subscription through the
Shopify Admin GraphQL API:
- currentAppInstallation.activeSubscriptions to find the AppUsagePricing line
- appUsageRecordCreate to create the charge

Every HTTP or GraphQL failure is mapped onto the billing.errors taxonomy.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..core.models import TenantIdentity
from .errors import (
    ChargeAuthError,
    ChargeError,
    ChargeNetworkError,
    ChargeNotFoundError,
    ChargeRateLimitError,
    ChargeRequestError,
    ChargeServerError,
    ChargeTimeoutError,
)
from .provider import BillableLine, ChargeProvider

logger = structlog.get_logger()

USAGE_PRICING_TYPENAME = "AppUsagePricing"

ACTIVE_SUBSCRIPTIONS_QUERY = """
query {
  currentAppInstallation {
    activeSubscriptions {
      lineItems {
        id
        plan {
          pricingDetails {
            __typename
          }
        }
      }
    }
  }
}
"""

CREATE_USAGE_RECORD_MUTATION = """
mutation appUsageRecordCreate($subscriptionLineItemId: ID!, $price: MoneyInput!, $description: String!) {
  appUsageRecordCreate(
    subscriptionLineItemId: $subscriptionLineItemId,
    price: $price,
    description: $description
  ) {
    appUsageRecord {
      id
    }
    userErrors {
      field
      message
    }
  }
}
"""

SHOP_QUERY = """
query {
  shop {
    name
  }
}
"""


def shop_domain(tenant_key: str) -> str:
    """Normalize a shop key to its myshopify.com domain."""
    if tenant_key.endswith(".myshopify.com"):
        return tenant_key
    return f"{tenant_key}.myshopify.com"


class ShopifyChargeProvider(ChargeProvider):
    """ChargeProvider backed by the Shopify Admin GraphQL API."""

    def __init__(
        self,
        api_version: str = "2024-01",
        currency: str = "USD",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_version = api_version
        self.currency = currency
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def graphql_url(self, tenant: TenantIdentity) -> str:
        return f"https://{shop_domain(tenant.tenant_key)}/admin/api/{self.api_version}/graphql.json"

    async def find_billable_line(self, tenant: TenantIdentity) -> Optional[BillableLine]:
        data = await self._graphql(tenant, ACTIVE_SUBSCRIPTIONS_QUERY)

        installation = data.get("currentAppInstallation") or {}
        subscriptions: List[Dict[str, Any]] = installation.get("activeSubscriptions") or []

        for subscription in subscriptions:
            for item in subscription.get("lineItems") or []:
                pricing = ((item.get("plan") or {}).get("pricingDetails") or {})
                if pricing.get("__typename") == USAGE_PRICING_TYPENAME:
                    return BillableLine(line_id=item["id"], tenant_key=tenant.tenant_key)

        return None

    async def create_charge(
        self,
        tenant: TenantIdentity,
        line: BillableLine,
        amount: Decimal,
        description: str,
    ) -> str:
        variables = {
            "subscriptionLineItemId": line.line_id,
            "price": {
                "amount": f"{amount:.2f}",
                "currencyCode": self.currency,
            },
            "description": description,
        }
        data = await self._graphql(tenant, CREATE_USAGE_RECORD_MUTATION, variables)

        result = data.get("appUsageRecordCreate") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise ChargeRequestError(
                f"GraphQL errors: {', '.join(e.get('message', '') for e in user_errors)}"
            )

        charge_id = (result.get("appUsageRecord") or {}).get("id")
        if not charge_id:
            raise ChargeRequestError("Failed to create usage charge - no charge ID returned")

        logger.debug("shopify_usage_record_created", shop=tenant.tenant_key, charge_id=charge_id)
        return charge_id

    async def test_connection(self, tenant: TenantIdentity) -> bool:
        """Check that the tenant's credential can reach the Admin API."""
        try:
            await self._graphql(tenant, SHOP_QUERY)
            return True
        except ChargeError as e:
            logger.warning("shopify_connection_test_failed", shop=tenant.tenant_key, error=str(e))
            return False

    async def _graphql(
        self,
        tenant: TenantIdentity,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """POST a GraphQL document and return its `data` member."""
        try:
            response = await self._client.post(
                self.graphql_url(tenant),
                json={"query": query, "variables": variables or {}},
                headers={
                    "X-Shopify-Access-Token": tenant.access_credential,
                    "Content-Type": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise ChargeTimeoutError(f"Shopify API timeout: {e}") from e
        except httpx.TransportError as e:
            raise ChargeNetworkError(f"API request failed: {e}") from e

        _raise_for_status(response)

        try:
            body = response.json()
        except ValueError as e:
            raise ChargeServerError(f"Invalid JSON from Shopify API: {e}", response.status_code) from e

        errors = body.get("errors")
        if errors:
            if isinstance(errors, str):
                errors = [{"message": errors}]
            messages = ", ".join(e.get("message", "") for e in errors)
            if any((e.get("extensions") or {}).get("code") == "THROTTLED" for e in errors):
                raise ChargeRateLimitError(f"Rate limit exceeded: {messages}")
            raise ChargeRequestError(f"GraphQL errors: {messages}")

        return body.get("data") or {}

    async def aclose(self) -> None:
        await self._client.aclose()


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise ChargeAuthError("Invalid access token", status)
    if status == 404:
        raise ChargeNotFoundError("Shop not found", status)
    if status == 429:
        raise ChargeRateLimitError("Rate limit exceeded", status)
    if status >= 500:
        raise ChargeServerError(f"Shopify API error: {status}", status)
    raise ChargeRequestError(f"API request failed: {status}", status)
