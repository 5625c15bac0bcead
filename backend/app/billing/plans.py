"""Plan definitions: pricing tiers, token allocations, and Stripe price IDs.

This is the single source of truth for mapping Stripe price IDs to plans.
Every handler resolves plans through these helpers.
"""

from dataclasses import dataclass, field

from app.config import settings

MONTHLY = "monthly"
YEARLY = "yearly"


@dataclass(frozen=True)
class PlanConfig:
    """Static catalog entry for a subscription plan."""

    name: str
    display_name: str
    tier: int  # higher = more expensive; used to rank duplicate subscriptions
    tokens: int  # credited once per subscription
    renews_tokens: bool  # credit again on renewal invoices
    price_monthly_cents: int
    price_yearly_cents: int
    stripe_price_ids: dict[str, str | None] = field(default_factory=dict)  # cycle -> price id

    @property
    def is_free(self) -> bool:
        return self.price_monthly_cents == 0


PLANS: dict[str, PlanConfig] = {
    "free": PlanConfig(
        name="free",
        display_name="Free",
        tier=1,
        tokens=settings.free_plan_credits,
        renews_tokens=False,
        price_monthly_cents=0,
        price_yearly_cents=0,
        stripe_price_ids={MONTHLY: None, YEARLY: None},
    ),
    "pro": PlanConfig(
        name="pro",
        display_name="Pro",
        tier=2,
        tokens=150,
        renews_tokens=True,
        price_monthly_cents=1900,
        price_yearly_cents=19000,
        stripe_price_ids={
            MONTHLY: settings.stripe_pro_monthly_price_id or None,
            YEARLY: settings.stripe_pro_yearly_price_id or None,
        },
    ),
    "unlimited": PlanConfig(
        name="unlimited",
        display_name="Unlimited",
        tier=3,
        tokens=500,
        renews_tokens=False,
        price_monthly_cents=4900,
        price_yearly_cents=49000,
        stripe_price_ids={
            MONTHLY: settings.stripe_unlimited_monthly_price_id or None,
            YEARLY: settings.stripe_unlimited_yearly_price_id or None,
        },
    ),
}

# Ranking used when choosing which duplicate subscription to keep
PLAN_PRIORITY: dict[str, int] = {p.name: p.tier for p in PLANS.values()}


def get_plan(plan_name: str) -> PlanConfig | None:
    """Get a plan by name. Returns None if unknown."""
    return PLANS.get(plan_name)


def get_plan_by_price_id(price_id: str | None) -> str | None:
    """Reverse lookup: Stripe price ID -> plan name. Returns None if not found."""
    if not price_id:
        return None
    for plan in PLANS.values():
        if price_id in plan.stripe_price_ids.values():
            return plan.name
    return None


def get_billing_cycle(price_id: str | None) -> str | None:
    """Return 'monthly' or 'yearly' for a known price ID."""
    if not price_id:
        return None
    for plan in PLANS.values():
        for cycle, plan_price_id in plan.stripe_price_ids.items():
            if plan_price_id == price_id:
                return cycle
    return None


def get_price_id(plan_name: str, billing_cycle: str = MONTHLY) -> str | None:
    """Return the configured Stripe price ID for a plan and billing cycle."""
    plan = PLANS.get(plan_name)
    if plan is None:
        return None
    return plan.stripe_price_ids.get(billing_cycle)


def price_id_mappings() -> dict[str, str]:
    """All configured price IDs as ``{price_id: "<plan>-<cycle>"}`` (diagnostics)."""
    return {
        price_id: f"{plan.name}-{cycle}"
        for plan in PLANS.values()
        for cycle, price_id in plan.stripe_price_ids.items()
        if price_id
    }
