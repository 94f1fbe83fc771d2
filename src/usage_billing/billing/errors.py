"""
Charge Provider Errors

Every failure a charge provider can raise maps to one of these categories. The
dispatcher decides whether to retry from the category alone.
"""

from typing import Optional


class ChargeError(Exception):
    """Base class for charge provider failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ChargeAuthError(ChargeError):
    """Credential rejected by the provider (401/403)."""
    pass


class ChargeRateLimitError(ChargeError):
    """Provider asked us to slow down (429 or throttled)."""
    pass


class ChargeServerError(ChargeError):
    """Provider-side failure (5xx)."""
    pass


class ChargeNotFoundError(ChargeError):
    """Tenant or resource unknown to the provider (404)."""
    pass


class ChargeRequestError(ChargeError):
    """Request rejected for any other reason (other 4xx, user errors)."""
    pass


class ChargeTimeoutError(ChargeError):
    """Call did not complete within the configured timeout."""
    pass


class ChargeNetworkError(ChargeError):
    """Connection could not be established or was dropped."""
    pass
