"""Stripe Checkout endpoint."""

import logging

from fastapi import APIRouter

from app.api.deps import billing_errors
from app.billing.stripe_client import create_checkout_session
from app.schemas.billing import CheckoutRequest, CheckoutResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["checkout"])


@router.post("/create-checkout-session", response_model=CheckoutResponse)
async def create_checkout(body: CheckoutRequest) -> CheckoutResponse:
    """Create a Stripe Checkout session for a subscription purchase.

    The internal user ID travels in the session and subscription metadata so
    the webhooks can link the Stripe subscription back to the user.
    """
    metadata = {
        "userId": body.customer_id or "",
        "planType": body.plan_type or "",
        "billingCycle": body.billing_cycle,
    }
    with billing_errors("Failed to create checkout session"):
        session = await create_checkout_session(
            price_id=body.price_id,
            customer_email=body.user_email,
            metadata=metadata,
            discount=body.coupon_id,
            plan_type=body.plan_type,
        )
    return CheckoutResponse(session_id=session.session_id, url=session.url)
