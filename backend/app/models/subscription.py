"""Subscription model: Stripe billing state per user."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

ACTIVE = "active"
TRIALING = "trialing"
PAST_DUE = "past_due"
CANCELED = "canceled"

ACTIVE_STATUSES: tuple[str, ...] = (ACTIVE, TRIALING)


class UserSubscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One billing relationship between a user and a plan.

    A user may have several rows over time (historical, canceled). At most
    one of them should be active or trialing; this is kept by
    ``activate_exclusively`` rather than a database constraint.
    """

    __tablename__ = "user_subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("plans.id"),
        nullable=False,
    )

    # Stripe identifiers: the subscription id is NULL only for the implicit free plan
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False, server_default=ACTIVE)

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    # Relationships
    plan: Mapped["Plan"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    @property
    def plan_name(self) -> str | None:
        return self.plan.name if self.plan is not None else None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(id={self.id}, user_id={self.user_id}, "
            f"stripe_subscription_id={self.stripe_subscription_id}, status={self.status})>"
        )
