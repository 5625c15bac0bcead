"""Pydantic v2 request/response schemas for billing endpoints.

The frontend speaks camelCase; fields are snake_case in Python and
serialized with camelCase aliases.
"""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model accepting and emitting camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# --- Request schemas ---


class CheckoutRequest(CamelModel):
    """Request to create a Stripe Checkout session."""

    price_id: str = Field(min_length=1)
    user_email: str = Field(min_length=1)
    customer_id: str | None = None  # internal user ID, stored in Stripe metadata
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    plan_type: str | None = None
    coupon_id: str | None = None


class SubscriptionIdRequest(CamelModel):
    """Request naming a Stripe subscription (cancel / reactivate)."""

    subscription_id: str = Field(min_length=1)


class DowngradeRequest(CamelModel):
    """Request to downgrade a subscription at period end."""

    subscription_id: str = Field(min_length=1)
    target_plan: str = Field(min_length=1)


class UserRequest(CamelModel):
    """Request naming a user (sync, cleanup, diagnostics)."""

    user_id: uuid.UUID


class FixSubscriptionRequest(CamelModel):
    """Request to force one Stripe-linked row to be the user's active subscription."""

    user_id: uuid.UUID
    stripe_subscription_id: str = Field(min_length=1)


# --- Response schemas ---


class CheckoutResponse(CamelModel):
    """Stripe Checkout session returned to the frontend."""

    session_id: str
    url: str | None


class StripeSubscriptionSummary(CamelModel):
    """Subscription state as reported by Stripe."""

    id: str
    status: str | None
    cancel_at_period_end: bool
    current_period_end: datetime | None


class CancelResponse(CamelModel):
    success: bool = True
    message: str
    cancel_at: datetime | None
    subscription: StripeSubscriptionSummary


class ReactivateResponse(CamelModel):
    success: bool = True
    message: str
    subscription: StripeSubscriptionSummary


class DowngradeResponse(CamelModel):
    success: bool = True
    message: str
    action: str  # "cancel" or "downgrade"
    target_plan: str
    effective_date: datetime | None


class SyncChanges(CamelModel):
    plan_changed: bool
    status_changed: bool
    cancel_changed: bool


class SyncResponse(CamelModel):
    """Result of reconciling a user's subscription with Stripe."""

    success: bool = True
    message: str
    needs_sync: bool
    old_plan: str | None = None
    new_plan: str | None = None
    current_plan: str | None = None
    current_status: str | None = None
    changes: SyncChanges | None = None
    requires_page_reload: bool = False


class CleanupResponse(CamelModel):
    """Result of removing duplicate active subscriptions."""

    success: bool = True
    message: str
    active_count: int
    kept_subscription: str | None = None
    deactivated_count: int = 0
    deactivated_plans: list[str | None] = []


# --- Diagnostics ---


class SubscriptionRecord(CamelModel):
    """A stored subscription row."""

    id: uuid.UUID
    user_id: uuid.UUID
    plan_id: uuid.UUID
    plan_name: str | None
    stripe_subscription_id: str | None
    stripe_customer_id: str | None
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    created_at: datetime
    updated_at: datetime


class StripeIdDiagnostics(CamelModel):
    active_sub_stripe_id: str | None
    stripe_id_is_null: bool
    stripe_id_is_string_null: bool
    stripe_id_length: int | None


class DebugSubscriptionResponse(CamelModel):
    success: bool = True
    all_subscriptions: list[SubscriptionRecord]
    active_subscription: SubscriptionRecord | None
    debug: StripeIdDiagnostics


class StripeSubscriptionView(CamelModel):
    """Stripe's view of a subscription, optionally linked to a stored row."""

    stripe_id: str
    stripe_status: str | None
    stripe_price_id: str | None
    plan: str | None
    created: datetime | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    customer: str | None
    database_id: uuid.UUID | None = None
    database_plan: str | None = None
    database_status: str | None = None
    in_database: bool = True


class StripeLookupError(CamelModel):
    database_id: uuid.UUID
    stripe_id: str
    error: str


class StripeAnalysis(CamelModel):
    total_db_subscriptions: int
    total_stripe_subscriptions: int
    active_stripe_subscriptions: int
    subscriptions_not_in_db: int


class DebugStripeResponse(CamelModel):
    success: bool = True
    user_id: uuid.UUID
    database_subscriptions: list[SubscriptionRecord]
    stripe_subscriptions: list[StripeSubscriptionView]
    stripe_errors: list[StripeLookupError]
    all_customer_subscriptions: list[StripeSubscriptionView]
    price_id_mappings: dict[str, str]
    analysis: StripeAnalysis


class FixSubscriptionResponse(CamelModel):
    success: bool = True
    message: str
    actions: list[str]
