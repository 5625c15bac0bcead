"""Manual reconciliation: operations triggered by the frontend or operators.

Each operation compares Stripe's state with the stored rows and repairs the
difference. Writes that follow a successful Stripe mutation are committed on
their own: if they fail the Stripe change stands and a later sync closes the
gap.
"""

import logging
import uuid

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import (
    InvalidPlanChangeError,
    InvalidSubscriptionError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
    UnknownPriceError,
)
from app.billing.plans import (
    MONTHLY,
    PLAN_PRIORITY,
    get_billing_cycle,
    get_plan,
    get_plan_by_price_id,
    get_price_id,
)
from app.billing.snapshot import SubscriptionSnapshot
from app.billing.stripe_client import get_subscription, update_subscription
from app.database import utcnow
from app.models.subscription import ACTIVE, ACTIVE_STATUSES, CANCELED, UserSubscription
from app.schemas.billing import (
    CleanupResponse,
    DowngradeResponse,
    StripeSubscriptionSummary,
    SyncChanges,
    SyncResponse,
)
from app.services.subscription_service import (
    activate_exclusively,
    apply_changes,
    cancel_subscriptions,
    get_plan_id,
    list_user_subscriptions,
    update_by_stripe_id,
)

logger = logging.getLogger(__name__)


def has_stripe_id(subscription: UserSubscription) -> bool:
    """Whether the row carries a usable Stripe subscription ID.

    Older rows stored the literal string ``"null"``.
    """
    value = subscription.stripe_subscription_id
    return bool(value) and value != "null"


def summarize(snapshot: SubscriptionSnapshot) -> StripeSubscriptionSummary:
    return StripeSubscriptionSummary(
        id=snapshot.id,
        status=snapshot.raw_status,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        current_period_end=snapshot.current_period_end,
    )


def _snapshot_fields(snapshot: SubscriptionSnapshot) -> dict:
    return {
        "status": snapshot.status,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
        "current_period_start": snapshot.current_period_start,
        "current_period_end": snapshot.current_period_end,
    }


async def _persist_after_stripe_change(
    db: AsyncSession, stripe_subscription_id: str, **values
) -> None:
    """Mirror a successful Stripe mutation locally without failing the request."""
    values.setdefault("updated_at", utcnow())
    try:
        updated = await update_by_stripe_id(db, stripe_subscription_id, **values)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Stripe subscription %s was updated but the database write failed; "
            "a sync will reconcile it",
            stripe_subscription_id,
        )
        return

    if not updated:
        logger.warning("No local subscription row for Stripe subscription %s", stripe_subscription_id)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


async def _sync_from_other_records(
    db: AsyncSession,
    user_id: uuid.UUID,
    current: UserSubscription,
    all_subscriptions: list[UserSubscription],
) -> SyncResponse:
    """The active row has no Stripe ID: look for a Stripe-linked row that should win."""
    candidates = [
        sub
        for sub in all_subscriptions
        if sub.id != current.id
        and has_stripe_id(sub)
        and sub.stripe_subscription_id.startswith("sub_")
    ]
    if not candidates:
        logger.info("User %s is correctly on the free plan", user_id)
        return SyncResponse(
            message="User is correctly on free plan with no active Stripe subscriptions",
            needs_sync=False,
            current_plan=current.plan_name,
        )

    for candidate in candidates:
        try:
            snapshot = await get_subscription(candidate.stripe_subscription_id)
        except stripe.StripeError as e:
            logger.warning(
                "Stripe subscription %s could not be retrieved: %s",
                candidate.stripe_subscription_id,
                e.user_message or str(e),
            )
            continue

        if not snapshot.is_active:
            continue

        logger.info(
            "Found active Stripe subscription %s for user %s, switching from row %s",
            snapshot.id,
            user_id,
            current.id,
        )
        await apply_changes(db, candidate, _snapshot_fields(snapshot))
        await activate_exclusively(db, user_id, candidate.id, status=ACTIVE)
        return SyncResponse(
            message="Switched from free plan to active Stripe subscription",
            needs_sync=True,
            old_plan=current.plan_name,
            new_plan=candidate.plan_name,
            current_plan=candidate.plan_name,
            current_status=ACTIVE,
            requires_page_reload=True,
        )

    logger.info("No active Stripe subscriptions for user %s", user_id)
    return SyncResponse(
        message="No active Stripe subscriptions found",
        needs_sync=False,
        current_plan=current.plan_name,
    )


async def sync_user_subscription(db: AsyncSession, user_id: uuid.UUID) -> SyncResponse:
    """Bring the user's stored subscription in line with Stripe.

    Nothing is written when plan, status and cancellation flag already match
    and the user has a single active row.
    """
    all_subscriptions = await list_user_subscriptions(db, user_id)
    current = next((sub for sub in all_subscriptions if sub.is_active), None)
    if current is None:
        raise SubscriptionNotFoundError("No subscription found")

    if not has_stripe_id(current):
        return await _sync_from_other_records(db, user_id, current, all_subscriptions)

    if not current.stripe_subscription_id.startswith("sub_"):
        raise InvalidSubscriptionError(
            "Invalid Stripe subscription ID format", needsSync=False
        )

    try:
        snapshot = await get_subscription(current.stripe_subscription_id)
    except stripe.InvalidRequestError as e:
        if e.code != "resource_missing":
            raise
        logger.info(
            "Stripe subscription %s no longer exists, marking row %s canceled",
            current.stripe_subscription_id,
            current.id,
        )
        await apply_changes(db, current, {"status": CANCELED})
        return SyncResponse(
            message="Subscription was canceled in Stripe and updated in database",
            needs_sync=True,
            old_plan=current.plan_name,
            current_status=CANCELED,
            requires_page_reload=True,
        )

    actual_plan = get_plan_by_price_id(snapshot.price_id)
    if actual_plan is None:
        raise UnknownPriceError(
            f"Price '{snapshot.price_id}' does not match any plan", priceId=snapshot.price_id
        )

    old_plan = current.plan_name
    changes = SyncChanges(
        plan_changed=old_plan != actual_plan,
        status_changed=current.status != snapshot.status,
        cancel_changed=current.cancel_at_period_end != snapshot.cancel_at_period_end,
    )
    conflicting = [sub for sub in all_subscriptions if sub.is_active and sub.id != current.id]

    if not (changes.plan_changed or changes.status_changed or changes.cancel_changed or conflicting):
        logger.info("Subscription %s already in sync", snapshot.id)
        return SyncResponse(
            message="Subscription is already in sync",
            needs_sync=False,
            current_plan=actual_plan,
            current_status=current.status,
        )

    updates = _snapshot_fields(snapshot)
    if changes.plan_changed:
        logger.info("Updating plan of %s from %s to %s", snapshot.id, old_plan, actual_plan)
        updates["plan_id"] = await get_plan_id(db, actual_plan)
    await apply_changes(db, current, updates)

    if snapshot.status in ACTIVE_STATUSES:
        await activate_exclusively(db, user_id, current.id, status=snapshot.status)

    return SyncResponse(
        message="Subscription synced successfully",
        needs_sync=True,
        old_plan=old_plan,
        new_plan=actual_plan,
        current_plan=actual_plan,
        current_status=snapshot.status,
        changes=changes,
        requires_page_reload=True,
    )


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


def _keep_rank(subscription: UserSubscription) -> tuple:
    """Rank for the subscription to keep: Stripe-linked, then plan tier, then newest."""
    return (
        has_stripe_id(subscription),
        PLAN_PRIORITY.get(subscription.plan_name or "", 0),
        subscription.created_at,
    )


async def cleanup_user_subscriptions(db: AsyncSession, user_id: uuid.UUID) -> CleanupResponse:
    """Keep the best active subscription of a user and cancel the others."""
    active = await list_user_subscriptions(db, user_id, statuses=ACTIVE_STATUSES)
    if len(active) <= 1:
        return CleanupResponse(
            message="No cleanup needed - only one or no active subscriptions",
            active_count=len(active),
            kept_subscription=active[0].plan_name if active else None,
        )

    best = max(active, key=_keep_rank)
    duplicates = [sub for sub in active if sub.id != best.id]
    logger.info(
        "Keeping subscription %s (%s) for user %s, canceling %d duplicate(s)",
        best.id,
        best.plan_name,
        user_id,
        len(duplicates),
    )
    await cancel_subscriptions(db, [sub.id for sub in duplicates])

    return CleanupResponse(
        message="Successfully cleaned up duplicate subscriptions",
        active_count=1,
        kept_subscription=best.plan_name,
        deactivated_count=len(duplicates),
        deactivated_plans=[sub.plan_name for sub in duplicates],
    )


# ---------------------------------------------------------------------------
# Cancel / reactivate / downgrade
# ---------------------------------------------------------------------------


async def cancel_subscription(db: AsyncSession, stripe_subscription_id: str) -> SubscriptionSnapshot:
    """Schedule cancellation at the end of the current period."""
    logger.info("Canceling subscription %s at period end", stripe_subscription_id)
    snapshot = await update_subscription(stripe_subscription_id, cancel_at_period_end=True)
    await _persist_after_stripe_change(db, stripe_subscription_id, cancel_at_period_end=True)
    return snapshot


async def reactivate_subscription(
    db: AsyncSession, stripe_subscription_id: str
) -> SubscriptionSnapshot:
    """Undo a scheduled cancellation on a still-active subscription."""
    current = await get_subscription(stripe_subscription_id)

    if not current.cancel_at_period_end:
        raise InvalidSubscriptionError(
            "Subscription is not scheduled for cancellation",
            subscription=summarize(current).model_dump(mode="json", by_alias=True),
        )
    if current.raw_status != "active":
        raise InvalidSubscriptionError(
            "Subscription is not active and cannot be reactivated",
            subscription=summarize(current).model_dump(mode="json", by_alias=True),
        )

    logger.info("Reactivating subscription %s", stripe_subscription_id)
    snapshot = await update_subscription(stripe_subscription_id, cancel_at_period_end=False)
    await _persist_after_stripe_change(db, stripe_subscription_id, cancel_at_period_end=False)
    return snapshot


async def downgrade_subscription(
    db: AsyncSession, stripe_subscription_id: str, target_plan: str
) -> DowngradeResponse:
    """Downgrade at period end.

    Free means canceling at period end. A lower paid plan swaps the price
    on the same billing cycle without proration; the stored plan changes when
    Stripe reports the update.
    """
    target = get_plan(target_plan.strip())
    if target is None:
        raise InvalidPlanChangeError("Invalid target plan", requestedPlan=target_plan)

    if target.is_free:
        logger.info("Downgrading %s to free: canceling at period end", stripe_subscription_id)
        snapshot = await update_subscription(stripe_subscription_id, cancel_at_period_end=True)
        await _persist_after_stripe_change(db, stripe_subscription_id, cancel_at_period_end=True)
        return DowngradeResponse(
            message=(
                "Subscription will be canceled and downgraded to Free at the end "
                "of the current billing period"
            ),
            action="cancel",
            target_plan=target.name,
            effective_date=snapshot.current_period_end,
        )

    current = await get_subscription(stripe_subscription_id)
    current_plan_name = get_plan_by_price_id(current.price_id)

    if current_plan_name == target.name:
        raise InvalidPlanChangeError(
            f"Subscription is already on {target.name} plan",
            currentPlan=current_plan_name,
            requestedPlan=target.name,
        )

    current_plan = get_plan(current_plan_name) if current_plan_name else None
    if current_plan is not None and target.tier > current_plan.tier:
        raise InvalidPlanChangeError(
            f"Cannot downgrade from {current_plan.display_name} to {target.display_name} "
            "(that would be an upgrade)",
            currentPlan=current_plan.name,
            requestedPlan=target.name,
        )

    billing_cycle = get_billing_cycle(current.price_id) or MONTHLY
    new_price_id = get_price_id(target.name, billing_cycle)
    if new_price_id is None:
        raise PlanNotFoundError(f"No {billing_cycle} price configured for plan '{target.name}'")

    if new_price_id == current.price_id:
        raise InvalidPlanChangeError(
            f"Subscription is already on {target.name} plan (price IDs match)",
            currentPriceId=current.price_id,
            newPriceId=new_price_id,
        )

    if current.item_id is None:
        raise InvalidSubscriptionError("Subscription has no items to change")

    logger.info(
        "Scheduling downgrade of %s: %s -> %s (%s)",
        stripe_subscription_id,
        current.price_id,
        new_price_id,
        billing_cycle,
    )
    snapshot = await update_subscription(
        stripe_subscription_id,
        items=[{"id": current.item_id, "price": new_price_id}],
        proration_behavior="none",
        billing_cycle_anchor="unchanged",
    )
    # plan_id follows via customer.subscription.updated
    await _persist_after_stripe_change(db, stripe_subscription_id)

    return DowngradeResponse(
        message=(
            f"Subscription will be downgraded to {target.name} at the end of "
            "the current billing period"
        ),
        action="downgrade",
        target_plan=target.name,
        effective_date=snapshot.current_period_end,
    )
