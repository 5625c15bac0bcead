"""Operator diagnostic and repair endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import billing_errors, get_db
from app.billing.diagnostics import debug_stripe, debug_subscription, fix_subscription
from app.schemas.billing import (
    DebugStripeResponse,
    DebugSubscriptionResponse,
    FixSubscriptionRequest,
    FixSubscriptionResponse,
    UserRequest,
)

router = APIRouter(prefix="/api", tags=["diagnostics"])


@router.post("/debug-subscription", response_model=DebugSubscriptionResponse)
async def debug_subscription_endpoint(
    body: UserRequest,
    db: AsyncSession = Depends(get_db),
) -> DebugSubscriptionResponse:
    with billing_errors("Debug failed"):
        return await debug_subscription(db, body.user_id)


@router.post("/debug-stripe", response_model=DebugStripeResponse)
async def debug_stripe_endpoint(
    body: UserRequest,
    db: AsyncSession = Depends(get_db),
) -> DebugStripeResponse:
    with billing_errors("Debug failed"):
        return await debug_stripe(db, body.user_id)


@router.post("/fix-subscription", response_model=FixSubscriptionResponse)
async def fix_subscription_endpoint(
    body: FixSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
) -> FixSubscriptionResponse:
    """Force one Stripe-linked row to be the user's only active subscription."""
    with billing_errors("Fix failed"):
        return await fix_subscription(db, body.user_id, body.stripe_subscription_id)
