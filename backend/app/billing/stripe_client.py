"""Async Stripe API wrapper for PlugPress billing."""

import logging
from dataclasses import dataclass
from typing import Any

import stripe
from stripe import StripeClient

from app.billing.snapshot import SubscriptionSnapshot
from app.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSessionResult:
    """Identifier and redirect URL of a created Checkout Session."""

    session_id: str
    url: str | None


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )


def _discount_attempts(discount: str | None) -> list[dict[str, str] | None]:
    """Ordered discount strategies for a checkout session.

    The form suggested by the ID prefix goes first, then the other form,
    then no discount at all.
    """
    if not discount:
        return [None]
    promotion = {"promotion_code": discount}
    coupon = {"coupon": discount}
    if discount.startswith("promo_"):
        return [promotion, coupon, None]
    return [coupon, promotion, None]


def _build_checkout_params(
    price_id: str,
    customer_email: str,
    metadata: dict[str, str],
    plan_type: str | None,
    discount: dict[str, str] | None,
    allow_manual_codes: bool,
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "customer_email": customer_email,
        "metadata": metadata,
        "subscription_data": {"metadata": metadata},
        "success_url": f"{settings.site_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{settings.site_url}/pricing",
    }
    if discount is not None:
        params["discounts"] = [discount]
    elif allow_manual_codes and plan_type != "pro":
        # Pro checkouts never show the manual code field
        params["allow_promotion_codes"] = True
    return params


async def create_checkout_session(
    price_id: str,
    customer_email: str,
    metadata: dict[str, str],
    discount: str | None = None,
    plan_type: str | None = None,
) -> CheckoutSessionResult:
    """Create a Stripe Checkout Session for a subscription purchase.

    A discount that Stripe rejects never blocks checkout: the session is
    retried with the next discount strategy, ending with no discount.
    """
    client = get_stripe_client()

    for attempt in _discount_attempts(discount):
        params = _build_checkout_params(
            price_id=price_id,
            customer_email=customer_email,
            metadata=metadata,
            plan_type=plan_type,
            discount=attempt,
            allow_manual_codes=discount is None,
        )
        logger.info(
            "Creating checkout session for %s, price %s, discount %s",
            customer_email,
            price_id,
            attempt or "none",
        )
        try:
            session = await client.v1.checkout.sessions.create_async(params=params)
        except stripe.InvalidRequestError as e:
            # The no-discount attempt is the last one: its errors are real
            if attempt is None:
                raise
            logger.warning(
                "Checkout session with discount %s failed (%s), retrying with next strategy",
                attempt,
                e.user_message or str(e),
            )
            continue

        logger.info("Created checkout session %s", session.id)
        return CheckoutSessionResult(session_id=session.id, url=session.url)

    raise RuntimeError("Checkout discount strategies exhausted")


async def get_subscription(subscription_id: str) -> SubscriptionSnapshot:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    stripe_sub = await client.v1.subscriptions.retrieve_async(subscription_id)
    return SubscriptionSnapshot.from_stripe(stripe_sub)


async def update_subscription(subscription_id: str, **params: Any) -> SubscriptionSnapshot:
    """Update a Stripe subscription and return its new state."""
    client = get_stripe_client()
    logger.info("Updating Stripe subscription %s: %s", subscription_id, params)
    stripe_sub = await client.v1.subscriptions.update_async(subscription_id, params=params)
    return SubscriptionSnapshot.from_stripe(stripe_sub)


async def list_subscriptions(customer_id: str) -> list[SubscriptionSnapshot]:
    """List every subscription (any status) of a Stripe customer."""
    client = get_stripe_client()
    result = await client.v1.subscriptions.list_async(
        params={"customer": customer_id, "status": "all", "limit": 100}
    )
    return [SubscriptionSnapshot.from_stripe(sub) for sub in result.data]


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous)."""
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)
