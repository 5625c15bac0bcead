"""Stripe webhook event handlers: process subscription lifecycle events."""

import logging
import uuid
from datetime import timedelta

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.dedup import hold_until_commit, processed_subscriptions, subscription_key
from app.billing.plans import get_plan, get_plan_by_price_id
from app.billing.snapshot import SubscriptionSnapshot, metadata_dict
from app.billing.stripe_client import get_subscription
from app.config import settings
from app.database import utcnow
from app.models.subscription import ACTIVE_STATUSES, CANCELED, PAST_DUE, UserSubscription
from app.services.subscription_service import (
    activate_exclusively,
    apply_changes,
    create_subscription,
    get_plan_id,
    get_subscription_by_stripe_id,
    update_by_stripe_id,
)
from app.services.token_service import PURCHASE, credit_tokens, has_purchase_for_subscription

logger = logging.getLogger(__name__)


def _get_invoice_subscription_id(invoice) -> str | None:
    """Subscription ID of an invoice.

    Newer Stripe API versions moved it under
    ``invoice.parent.subscription_details.subscription``.
    """
    subscription_id = getattr(invoice, "subscription", None)
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.id
    parent = getattr(invoice, "parent", None)
    details = getattr(parent, "subscription_details", None) if parent else None
    return getattr(details, "subscription", None) if details else None


def _parse_user_id(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        logger.error("Invalid userId in Stripe metadata: %r", value)
        return None


async def allocate_plan_tokens(
    db: AsyncSession, user_id: uuid.UUID, plan_type: str, subscription: UserSubscription
) -> int | None:
    """Credit a plan's tokens once per subscription row.

    Returns the new balance, or None when tokens were already credited.
    """
    if await has_purchase_for_subscription(db, subscription.id):
        logger.info(
            "Tokens already allocated for subscription %s, skipping", subscription.id
        )
        return None

    plan = get_plan(plan_type)
    if plan is None:
        raise ValueError(f"Unknown plan type: {plan_type}")

    return await credit_tokens(
        db,
        user_id=user_id,
        amount=plan.tokens,
        transaction_type=PURCHASE,
        description=f"{plan_type} plan subscription",
        subscription_id=subscription.id,
    )


async def process_subscription(
    db: AsyncSession,
    snapshot: SubscriptionSnapshot,
    user_id: uuid.UUID,
    plan_type: str,
    billing_cycle: str = "monthly",
) -> UserSubscription | None:
    """Upsert the subscription row for a Stripe subscription and credit tokens once.

    Returns None when the same subscription was just processed by this
    process.
    """
    key = subscription_key(snapshot.id, str(user_id), plan_type)
    if not processed_subscriptions.add(key):
        logger.info("Subscription %s already processed recently, skipping", snapshot.id)
        return None
    hold_until_commit(db, key)

    logger.info(
        "Processing subscription %s for user %s (plan=%s, cycle=%s)",
        snapshot.id,
        user_id,
        plan_type,
        billing_cycle,
    )
    try:
        plan_id = await get_plan_id(db, plan_type)
        values = {
            "plan_id": plan_id,
            "status": snapshot.status,
            "stripe_customer_id": snapshot.customer_id,
            "current_period_start": snapshot.current_period_start,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
        }

        subscription = await get_subscription_by_stripe_id(db, snapshot.id)
        if subscription is not None:
            await apply_changes(db, subscription, values)
        else:
            subscription, _ = await create_subscription(
                db,
                user_id=user_id,
                stripe_subscription_id=snapshot.id,
                **values,
            )

        if subscription.status in ACTIVE_STATUSES:
            await activate_exclusively(db, user_id, subscription.id, status=subscription.status)

        if snapshot.is_active:
            await allocate_plan_tokens(db, user_id, plan_type, subscription)
    except Exception:
        # Let a Stripe retry process it again
        processed_subscriptions.discard(key)
        raise

    return subscription


async def handle_checkout_session_completed(
    db: AsyncSession, event: stripe.Event
) -> None:
    """Handle checkout.session.completed: create the subscription row."""
    session = event.data.object
    metadata = metadata_dict(session)
    user_id = _parse_user_id(metadata.get("userId"))
    plan_type = metadata.get("planType")
    billing_cycle = metadata.get("billingCycle") or "monthly"

    if user_id is None or not plan_type:
        logger.error(
            "Missing required metadata in checkout session %s: userId=%s planType=%s",
            session.id,
            metadata.get("userId"),
            plan_type,
        )
        return

    subscription_id = getattr(session, "subscription", None)
    if not subscription_id:
        logger.warning("Checkout session %s has no subscription, skipping", session.id)
        return

    snapshot = await get_subscription(subscription_id)

    if await get_subscription_by_stripe_id(db, snapshot.id) is not None:
        logger.info(
            "Subscription %s already processed by another webhook, skipping checkout %s",
            snapshot.id,
            session.id,
        )
        return

    await process_subscription(db, snapshot, user_id, plan_type, billing_cycle)


async def handle_subscription_created(db: AsyncSession, event: stripe.Event) -> None:
    """Handle customer.subscription.created: create the subscription row."""
    snapshot = SubscriptionSnapshot.from_stripe(event.data.object)
    user_id = _parse_user_id(snapshot.user_id)

    if user_id is None or not snapshot.plan_type:
        logger.error(
            "Missing required metadata in subscription %s: %s", snapshot.id, snapshot.metadata
        )
        return

    await process_subscription(
        db, snapshot, user_id, snapshot.plan_type, snapshot.billing_cycle
    )


async def handle_subscription_updated(
    db: AsyncSession, event: stripe.Event
) -> None:
    """Handle customer.subscription.updated: sync plan, status, and period."""
    snapshot = SubscriptionSnapshot.from_stripe(event.data.object)

    subscription = await get_subscription_by_stripe_id(db, snapshot.id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (customer %s)",
            snapshot.id,
            snapshot.customer_id,
        )
        return

    changes = {
        "status": snapshot.status,
        "current_period_start": snapshot.current_period_start,
        "current_period_end": snapshot.current_period_end,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
    }

    plan_type = get_plan_by_price_id(snapshot.price_id)
    if plan_type is None:
        logger.warning(
            "Unknown price ID %s in subscription %s, keeping plan %s",
            snapshot.price_id,
            snapshot.id,
            subscription.plan_name,
        )
    elif plan_type != subscription.plan_name:
        logger.info(
            "Plan change detected for %s: %s -> %s",
            snapshot.id,
            subscription.plan_name,
            plan_type,
        )
        changes["plan_id"] = await get_plan_id(db, plan_type)

    changed = await apply_changes(db, subscription, changes)
    if not changed:
        logger.info("Subscription %s already in sync, nothing to update", snapshot.id)
        return

    logger.info(
        "Subscription updated: %s -> plan=%s, status=%s",
        snapshot.id,
        subscription.plan_name,
        subscription.status,
    )


async def handle_subscription_deleted(
    db: AsyncSession, event: stripe.Event
) -> None:
    """Handle customer.subscription.deleted: mark the row canceled (never deleted)."""
    stripe_sub = event.data.object
    updated = await update_by_stripe_id(
        db, stripe_sub.id, status=CANCELED, cancel_at_period_end=True
    )
    if not updated:
        logger.warning(
            "No local subscription found for Stripe subscription %s (delete event)",
            stripe_sub.id,
        )
        return
    logger.info("Subscription deleted: %s marked canceled", stripe_sub.id)


async def handle_invoice_paid(db: AsyncSession, event: stripe.Event) -> None:
    """Handle invoice.payment_succeeded: refresh status/period and credit renewals."""
    invoice = event.data.object
    subscription_id = _get_invoice_subscription_id(invoice)

    if not subscription_id:
        logger.info("Invoice %s has no subscription (one-time), skipping", invoice.id)
        return

    snapshot = await get_subscription(subscription_id)
    subscription = await get_subscription_by_stripe_id(db, snapshot.id)
    if subscription is None:
        logger.info(
            "No local subscription for %s yet (invoice %s), initial payment is handled "
            "by subscription creation",
            subscription_id,
            invoice.id,
        )
        return

    # A paid invoice brings past_due subscriptions back to active
    await apply_changes(
        db,
        subscription,
        {
            "status": snapshot.status,
            "current_period_start": snapshot.current_period_start,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
        },
    )

    age = utcnow() - subscription.created_at
    is_renewal = age > timedelta(seconds=settings.renewal_min_age_seconds)
    user_id = _parse_user_id(snapshot.user_id)
    plan_type = snapshot.plan_type

    if not is_renewal or user_id is None or not plan_type:
        logger.info(
            "Invoice %s is the initial payment for %s, tokens handled at creation",
            invoice.id,
            subscription_id,
        )
        return

    plan = get_plan(plan_type)
    if plan is None or not plan.renews_tokens:
        logger.info("No renewal token allocation for plan %s", plan_type)
        return

    logger.info("Renewal of subscription %s, allocating tokens", subscription_id)
    await allocate_plan_tokens(db, user_id, plan_type, subscription)


async def handle_invoice_payment_failed(
    db: AsyncSession, event: stripe.Event
) -> None:
    """Handle invoice.payment_failed: mark subscription as past_due."""
    invoice = event.data.object
    subscription_id = _get_invoice_subscription_id(invoice)

    if not subscription_id:
        logger.info(
            "Invoice %s has no subscription (one-time), skipping payment failure",
            invoice.id,
        )
        return

    updated = await update_by_stripe_id(db, subscription_id, status=PAST_DUE)
    if not updated:
        logger.warning(
            "No local subscription found for Stripe subscription %s (payment failed)",
            subscription_id,
        )
        return
    logger.info("Payment failed: subscription %s marked as past_due", subscription_id)
