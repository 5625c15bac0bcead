"""Create the PlugPress Stripe products and prices in test mode.

Run once from the backend directory:
    python -m app.billing.scripts.create_stripe_products

Outputs price IDs to set in .env:
    STRIPE_PRO_MONTHLY_PRICE_ID=price_xxx
    STRIPE_PRO_YEARLY_PRICE_ID=price_xxx
    ...
"""

import asyncio

from stripe import StripeClient

from app.billing.plans import MONTHLY, PLANS, YEARLY
from app.billing.stripe_client import get_stripe_client
from app.config import settings

_INTERVALS = {MONTHLY: "month", YEARLY: "year"}


async def create_products(client: StripeClient) -> dict[str, str]:
    """Create one product per paid plan with a monthly and a yearly price.

    Returns ``{env_var_name: price_id}``.
    """
    env: dict[str, str] = {}
    for plan in PLANS.values():
        if plan.is_free:
            continue

        product = await client.v1.products.create_async(
            params={
                "name": f"PlugPress {plan.display_name}",
                "description": f"{plan.tokens} extension generation tokens",
                "metadata": {"planType": plan.name},
            }
        )
        print(f"Created product: {product.name} ({product.id})")

        amounts = {MONTHLY: plan.price_monthly_cents, YEARLY: plan.price_yearly_cents}
        for cycle, interval in _INTERVALS.items():
            price = await client.v1.prices.create_async(
                params={
                    "product": product.id,
                    "unit_amount": amounts[cycle],
                    "currency": "usd",
                    "recurring": {"interval": interval},
                    "metadata": {"planType": plan.name, "billingCycle": cycle},
                }
            )
            print(f"  Price: ${amounts[cycle] / 100:.2f}/{interval} ({price.id})")
            env[f"STRIPE_{plan.name.upper()}_{cycle.upper()}_PRICE_ID"] = price.id

    return env


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    env = await create_products(get_stripe_client())

    print("\n--- Add these to your .env ---")
    for name, price_id in env.items():
        print(f"{name}={price_id}")


if __name__ == "__main__":
    asyncio.run(main())
