"""Subscription service: persistence operations for user subscriptions and plans.

Bulk updates here are single statements that bypass the session's identity
map; read helpers use ``populate_existing`` so callers always see the rows as
stored.
"""

import logging
import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import PlanNotFoundError
from app.billing.plans import get_plan
from app.models.plan import Plan
from app.models.subscription import ACTIVE, ACTIVE_STATUSES, CANCELED, UserSubscription

logger = logging.getLogger(__name__)


async def get_or_create_plan(db: AsyncSession, plan_name: str) -> Plan:
    """Return the plan row for a catalog plan, creating it on first use."""
    result = await db.execute(select(Plan).where(Plan.name == plan_name))
    plan = result.scalar_one_or_none()
    if plan is not None:
        return plan

    config = get_plan(plan_name)
    if config is None:
        raise PlanNotFoundError(f"Plan '{plan_name}' not found")

    logger.info("Creating plan row for catalog plan %s", plan_name)
    plan = Plan(
        name=config.name,
        display_name=config.display_name,
        tokens_per_month=config.tokens,
        price_cents=config.price_monthly_cents,
        is_active=True,
    )
    try:
        async with db.begin_nested():
            db.add(plan)
    except IntegrityError:
        # Another request created it first
        result = await db.execute(select(Plan).where(Plan.name == plan_name))
        plan = result.scalar_one()
    return plan


async def get_plan_id(db: AsyncSession, plan_name: str) -> uuid.UUID:
    """Resolve a plan name to its row ID."""
    plan = await get_or_create_plan(db, plan_name)
    return plan.id


async def get_subscription_by_stripe_id(
    db: AsyncSession, stripe_subscription_id: str
) -> UserSubscription | None:
    """Look up subscription by Stripe subscription ID (used by webhooks)."""
    result = await db.execute(
        select(UserSubscription)
        .where(UserSubscription.stripe_subscription_id == stripe_subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_user_subscriptions(
    db: AsyncSession, user_id: uuid.UUID, statuses: Sequence[str] | None = None
) -> list[UserSubscription]:
    """All subscriptions of a user, newest first."""
    stmt = select(UserSubscription).where(UserSubscription.user_id == user_id)
    if statuses is not None:
        stmt = stmt.where(UserSubscription.status.in_(statuses))
    stmt = stmt.order_by(UserSubscription.created_at.desc()).execution_options(
        populate_existing=True
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def create_subscription(db: AsyncSession, **values: Any) -> tuple[UserSubscription, bool]:
    """Insert a subscription row; returns ``(row, created)``.

    A unique violation on ``stripe_subscription_id`` means a concurrent
    webhook inserted the same subscription first. The savepoint is rolled
    back and the existing row is returned with ``created=False``.
    """
    subscription = UserSubscription(**values)
    try:
        async with db.begin_nested():
            db.add(subscription)
    except IntegrityError:
        stripe_subscription_id = values.get("stripe_subscription_id")
        if not stripe_subscription_id:
            raise
        existing = await get_subscription_by_stripe_id(db, stripe_subscription_id)
        if existing is None:
            raise
        logger.info(
            "Subscription %s already inserted by a concurrent request, using existing row %s",
            stripe_subscription_id,
            existing.id,
        )
        return existing, False

    logger.info(
        "Created subscription %s for user %s (stripe=%s)",
        subscription.id,
        subscription.user_id,
        subscription.stripe_subscription_id,
    )
    return subscription, True


async def apply_changes(
    db: AsyncSession, subscription: UserSubscription, changes: dict[str, Any]
) -> dict[str, Any]:
    """Write only the fields whose value differs from the stored one.

    Returns the fields that were actually changed (empty when already in sync).
    """
    changed = {
        name: value for name, value in changes.items() if getattr(subscription, name) != value
    }
    if not changed:
        return changed

    for name, value in changed.items():
        setattr(subscription, name, value)
    await db.flush()
    if "plan_id" in changed:
        await db.refresh(subscription, attribute_names=["plan"])

    logger.info("Updated subscription %s: %s", subscription.id, sorted(changed))
    return changed


async def activate_exclusively(
    db: AsyncSession,
    user_id: uuid.UUID,
    keep_id: uuid.UUID,
    status: str = ACTIVE,
) -> int:
    """Set ``keep_id`` to ``status`` and cancel every other active row of the user.

    Runs as one UPDATE so there is no window where the user has zero or two
    active subscriptions. Returns the number of other rows canceled.
    """
    result = await db.execute(
        update(UserSubscription)
        .where(
            UserSubscription.user_id == user_id,
            (UserSubscription.id == keep_id) | UserSubscription.status.in_(ACTIVE_STATUSES),
        )
        .values(
            status=case((UserSubscription.id == keep_id, status), else_=CANCELED),
        )
        .execution_options(synchronize_session=False)
    )
    deactivated = max(result.rowcount - 1, 0)
    logger.info(
        "Activated subscription %s (%s) for user %s, deactivated %d other(s)",
        keep_id,
        status,
        user_id,
        deactivated,
    )
    return deactivated


async def cancel_subscriptions(db: AsyncSession, subscription_ids: Sequence[uuid.UUID]) -> int:
    """Mark the given rows canceled. Returns the number of rows updated."""
    if not subscription_ids:
        return 0
    result = await db.execute(
        update(UserSubscription)
        .where(UserSubscription.id.in_(subscription_ids))
        .values(status=CANCELED)
        .execution_options(synchronize_session=False)
    )
    logger.info("Canceled %d subscription row(s)", result.rowcount)
    return result.rowcount


async def update_by_stripe_id(
    db: AsyncSession, stripe_subscription_id: str, **values: Any
) -> int:
    """Update the row(s) for a Stripe subscription. Returns the number of rows updated."""
    result = await db.execute(
        update(UserSubscription)
        .where(UserSubscription.stripe_subscription_id == stripe_subscription_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
