"""Operator diagnostics: inspect and repair a user's subscription rows."""

import logging
import uuid

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import SubscriptionNotFoundError
from app.billing.plans import get_plan_by_price_id, price_id_mappings
from app.billing.reconciliation import has_stripe_id
from app.billing.snapshot import SubscriptionSnapshot
from app.billing.stripe_client import get_subscription, list_subscriptions
from app.models.subscription import ACTIVE
from app.schemas.billing import (
    DebugStripeResponse,
    DebugSubscriptionResponse,
    FixSubscriptionResponse,
    StripeAnalysis,
    StripeIdDiagnostics,
    StripeLookupError,
    StripeSubscriptionView,
    SubscriptionRecord,
)
from app.services.subscription_service import (
    activate_exclusively,
    get_subscription_by_stripe_id,
    list_user_subscriptions,
)

logger = logging.getLogger(__name__)


def _view(snapshot: SubscriptionSnapshot, **extra) -> StripeSubscriptionView:
    return StripeSubscriptionView(
        stripe_id=snapshot.id,
        stripe_status=snapshot.raw_status,
        stripe_price_id=snapshot.price_id,
        plan=get_plan_by_price_id(snapshot.price_id),
        created=snapshot.created,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        customer=snapshot.customer_id,
        **extra,
    )


async def debug_subscription(db: AsyncSession, user_id: uuid.UUID) -> DebugSubscriptionResponse:
    """Every stored row of the user plus a closer look at the active row's Stripe ID."""
    subscriptions = await list_user_subscriptions(db, user_id)
    active = next((sub for sub in subscriptions if sub.is_active), None)
    stripe_id = active.stripe_subscription_id if active else None

    return DebugSubscriptionResponse(
        all_subscriptions=[SubscriptionRecord.model_validate(sub) for sub in subscriptions],
        active_subscription=SubscriptionRecord.model_validate(active) if active else None,
        debug=StripeIdDiagnostics(
            active_sub_stripe_id=stripe_id,
            stripe_id_is_null=stripe_id is None,
            stripe_id_is_string_null=stripe_id == "null",
            stripe_id_length=len(stripe_id) if stripe_id is not None else None,
        ),
    )


async def debug_stripe(db: AsyncSession, user_id: uuid.UUID) -> DebugStripeResponse:
    """Compare the user's stored rows with what Stripe reports."""
    subscriptions = await list_user_subscriptions(db, user_id)
    logger.info("Debugging Stripe subscriptions for user %s (%d rows)", user_id, len(subscriptions))

    linked: list[StripeSubscriptionView] = []
    errors: list[StripeLookupError] = []
    for sub in subscriptions:
        if not has_stripe_id(sub):
            continue
        try:
            snapshot = await get_subscription(sub.stripe_subscription_id)
        except stripe.StripeError as e:
            errors.append(
                StripeLookupError(
                    database_id=sub.id,
                    stripe_id=sub.stripe_subscription_id,
                    error=e.user_message or str(e),
                )
            )
            continue
        linked.append(
            _view(
                snapshot,
                database_id=sub.id,
                database_plan=sub.plan_name,
                database_status=sub.status,
            )
        )

    customer_subscriptions: list[StripeSubscriptionView] = []
    customer_id = linked[0].customer if linked else None
    if customer_id:
        stored_ids = {sub.stripe_subscription_id for sub in subscriptions}
        try:
            snapshots = await list_subscriptions(customer_id)
        except stripe.StripeError:
            logger.exception("Could not list subscriptions of customer %s", customer_id)
        else:
            customer_subscriptions = [
                _view(snapshot, in_database=snapshot.id in stored_ids) for snapshot in snapshots
            ]

    return DebugStripeResponse(
        user_id=user_id,
        database_subscriptions=[SubscriptionRecord.model_validate(sub) for sub in subscriptions],
        stripe_subscriptions=linked,
        stripe_errors=errors,
        all_customer_subscriptions=customer_subscriptions,
        price_id_mappings=price_id_mappings(),
        analysis=StripeAnalysis(
            total_db_subscriptions=len(subscriptions),
            total_stripe_subscriptions=len(linked),
            active_stripe_subscriptions=sum(
                1 for view in customer_subscriptions if view.stripe_status == "active"
            ),
            subscriptions_not_in_db=sum(
                1 for view in customer_subscriptions if not view.in_database
            ),
        ),
    )


async def fix_subscription(
    db: AsyncSession, user_id: uuid.UUID, stripe_subscription_id: str
) -> FixSubscriptionResponse:
    """Make the row linked to ``stripe_subscription_id`` the user's only active row."""
    target = await get_subscription_by_stripe_id(db, stripe_subscription_id)
    if target is None or target.user_id != user_id:
        raise SubscriptionNotFoundError(
            "Subscription not found for user",
            stripeSubscriptionId=stripe_subscription_id,
        )

    others = [
        sub
        for sub in await list_user_subscriptions(db, user_id)
        if sub.is_active and sub.id != target.id
    ]
    await activate_exclusively(db, user_id, target.id, status=ACTIVE)

    actions = [
        f"Activated subscription {target.id} ({target.plan_name}) "
        f"with Stripe ID {stripe_subscription_id}"
    ]
    actions.extend(
        f"Deactivated subscription {sub.id} ({sub.plan_name}) "
        f"with Stripe ID {sub.stripe_subscription_id}"
        for sub in others
    )
    logger.info("Fixed subscriptions of user %s: %s", user_id, actions)
    return FixSubscriptionResponse(message="Subscription fixed successfully", actions=actions)
