"""Subscription management endpoints: cancel, reactivate, downgrade, sync, cleanup."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import billing_errors, get_db
from app.billing.reconciliation import (
    cancel_subscription,
    cleanup_user_subscriptions,
    downgrade_subscription,
    reactivate_subscription,
    summarize,
    sync_user_subscription,
)
from app.schemas.billing import (
    CancelResponse,
    CleanupResponse,
    DowngradeRequest,
    DowngradeResponse,
    ReactivateResponse,
    SubscriptionIdRequest,
    SyncResponse,
    UserRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["subscriptions"])


@router.post("/cancel-subscription", response_model=CancelResponse)
async def cancel(
    body: SubscriptionIdRequest,
    db: AsyncSession = Depends(get_db),
) -> CancelResponse:
    """Cancel a subscription at the end of the current billing period."""
    with billing_errors("Failed to cancel subscription"):
        snapshot = await cancel_subscription(db, body.subscription_id)
    return CancelResponse(
        message="Subscription will be canceled at the end of the current billing period",
        cancel_at=snapshot.current_period_end,
        subscription=summarize(snapshot),
    )


@router.post("/reactivate-subscription", response_model=ReactivateResponse)
async def reactivate(
    body: SubscriptionIdRequest,
    db: AsyncSession = Depends(get_db),
) -> ReactivateResponse:
    """Undo a scheduled cancellation."""
    with billing_errors("Failed to reactivate subscription"):
        snapshot = await reactivate_subscription(db, body.subscription_id)
    return ReactivateResponse(
        message="Subscription has been reactivated successfully",
        subscription=summarize(snapshot),
    )


@router.post("/downgrade-subscription", response_model=DowngradeResponse)
async def downgrade(
    body: DowngradeRequest,
    db: AsyncSession = Depends(get_db),
) -> DowngradeResponse:
    """Downgrade to a lower plan (or free) at the end of the billing period."""
    with billing_errors("Failed to downgrade subscription"):
        return await downgrade_subscription(db, body.subscription_id, body.target_plan)


@router.post("/sync-subscription", response_model=SyncResponse)
async def sync(
    body: UserRequest,
    db: AsyncSession = Depends(get_db),
) -> SyncResponse:
    """Reconcile the user's stored subscription with Stripe."""
    with billing_errors("Failed to sync subscription"):
        return await sync_user_subscription(db, body.user_id)


@router.post("/cleanup-subscriptions", response_model=CleanupResponse)
async def cleanup(
    body: UserRequest,
    db: AsyncSession = Depends(get_db),
) -> CleanupResponse:
    """Keep one active subscription per user and cancel the duplicates."""
    with billing_errors("Failed to cleanup subscriptions"):
        return await cleanup_user_subscriptions(db, body.user_id)
