"""Billing error taxonomy.

Services raise these; routers translate them into HTTP responses using the
``status_code`` attribute.
"""

from typing import Any


class BillingError(Exception):
    """Base class for billing and reconciliation failures."""

    status_code: int = 500

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def to_detail(self) -> dict[str, Any]:
        return {"error": self.message, **self.context}


class SubscriptionNotFoundError(BillingError):
    """No matching subscription row exists."""

    status_code = 404


class InvalidSubscriptionError(BillingError):
    """The subscription cannot be used for the requested operation."""

    status_code = 400


class InvalidPlanChangeError(BillingError):
    """The requested plan change is not allowed (same plan, upgrade, unknown target)."""

    status_code = 400


class PlanNotFoundError(BillingError):
    """A plan name is not part of the catalog."""

    status_code = 500


class UnknownPriceError(BillingError):
    """A Stripe price ID does not map to any catalog plan."""

    status_code = 500
