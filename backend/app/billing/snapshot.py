"""Typed view of a Stripe subscription.

Handlers work with ``SubscriptionSnapshot`` instead of raw Stripe objects so
the shape of the Stripe SDK objects (and its API-version differences) is
handled in one place.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.models.subscription import ACTIVE, CANCELED, PAST_DUE, TRIALING

# Stripe subscription status -> stored status
_STATUS_MAP: dict[str, str] = {
    "active": ACTIVE,
    "trialing": TRIALING,
    "past_due": PAST_DUE,
    "unpaid": PAST_DUE,
    "incomplete": PAST_DUE,
    "paused": PAST_DUE,
    "canceled": CANCELED,
    "incomplete_expired": CANCELED,
}


def normalize_status(stripe_status: str | None) -> str:
    """Map a Stripe subscription status onto active/trialing/past_due/canceled."""
    if stripe_status is None:
        return PAST_DUE
    return _STATUS_MAP.get(stripe_status, PAST_DUE)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def metadata_dict(stripe_obj: Any) -> dict[str, str]:
    """Plain ``dict`` copy of a Stripe object's metadata.

    ``StripeObject`` stopped subclassing ``dict`` in stripe 15, so its metadata
    must go through ``to_dict()`` before any mapping access.
    """
    metadata = getattr(stripe_obj, "metadata", None)
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        metadata = metadata.to_dict()
    return {str(k): str(v) for k, v in metadata.items() if v is not None}


def _get_first_item(stripe_sub: Any):
    """Get the first subscription item.

    Bracket access avoids the clash with ``dict.items()`` on SDK versions
    where ``StripeObject`` is still a dict.
    """
    try:
        sub_items = stripe_sub["items"]
    except (KeyError, AttributeError, TypeError):
        sub_items = getattr(stripe_sub, "items", None)
        if callable(sub_items):
            return None
    data = getattr(sub_items, "data", None) if sub_items is not None else None
    return data[0] if data else None


def _get_id(value: Any) -> str | None:
    """Return the ID of a possibly-expanded Stripe reference."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subscription state as reported by Stripe at one point in time."""

    id: str
    customer_id: str | None
    status: str
    raw_status: str | None
    price_id: str | None
    item_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    metadata: dict[str, str] = field(default_factory=dict)
    created: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.raw_status == "active"

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("userId") or None

    @property
    def plan_type(self) -> str | None:
        return self.metadata.get("planType") or None

    @property
    def billing_cycle(self) -> str:
        return self.metadata.get("billingCycle") or "monthly"

    @classmethod
    def from_stripe(cls, stripe_sub: Any) -> "SubscriptionSnapshot":
        """Build a snapshot from a Stripe Subscription object.

        In Stripe API 2025-08-27 (basil), current_period_start/end moved
        from the subscription object to the subscription item; both
        locations are read, item first.
        """
        item = _get_first_item(stripe_sub)
        price = getattr(item, "price", None) if item else None

        period_start = getattr(item, "current_period_start", None) if item else None
        period_end = getattr(item, "current_period_end", None) if item else None
        if period_start is None:
            period_start = getattr(stripe_sub, "current_period_start", None)
        if period_end is None:
            period_end = getattr(stripe_sub, "current_period_end", None)

        raw_status = getattr(stripe_sub, "status", None)

        return cls(
            id=stripe_sub.id,
            customer_id=_get_id(getattr(stripe_sub, "customer", None)),
            status=normalize_status(raw_status),
            raw_status=raw_status,
            price_id=getattr(price, "id", None) if price else None,
            item_id=getattr(item, "id", None) if item else None,
            current_period_start=ts_to_naive(period_start),
            current_period_end=ts_to_naive(period_end),
            cancel_at_period_end=bool(getattr(stripe_sub, "cancel_at_period_end", False)),
            metadata=metadata_dict(stripe_sub),
            created=ts_to_naive(getattr(stripe_sub, "created", None)),
        )
