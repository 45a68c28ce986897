"""Create Stripe products and prices for the paid plans.

Run once per Stripe account (test mode first):
    python -m fixitflow.billing.scripts.create_stripe_products

Outputs price IDs to set in .env:
    STRIPE_DAILY_PRICE_ID=price_xxx
    STRIPE_MONTHLY_PRICE_ID=price_xxx
    STRIPE_ANNUAL_PRICE_ID=price_xxx
"""

import asyncio

import stripe
from stripe import StripeClient

from fixitflow.billing.plans import PAID_PLAN_NAMES, capability_label, get_plan
from fixitflow.config import settings

# Stripe recurring interval per plan
INTERVALS: dict[str, str] = {
    "daily": "day",
    "monthly": "month",
    "annual": "year",
}


async def create_products(client: StripeClient) -> dict[str, str]:
    """Create one product and recurring price per paid plan. Returns plan name -> price id."""
    price_ids: dict[str, str] = {}
    for name in PAID_PLAN_NAMES:
        plan = get_plan(name)
        product = await client.v1.products.create_async(
            params={
                "name": f"FixItFlow {plan.display_name}",
                "description": ", ".join(capability_label(c) for c in sorted(plan.capabilities)),
                "metadata": {"plan": plan.name},
            }
        )
        price = await client.v1.prices.create_async(
            params={
                "product": product.id,
                "unit_amount": plan.price_cents,
                "currency": "usd",
                "recurring": {"interval": INTERVALS[name]},
                "metadata": {"plan": plan.name},
            }
        )
        print(f"Created product: {product.name} ({product.id})")
        print(f"  Price: ${plan.price_cents / 100:.2f}/{INTERVALS[name]} ({price.id})")
        price_ids[name] = price.id
    return price_ids


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )
    price_ids = await create_products(client)

    print("\n--- Add these to your .env ---")
    for name, price_id in price_ids.items():
        print(f"STRIPE_{name.upper()}_PRICE_ID={price_id}")


if __name__ == "__main__":
    asyncio.run(main())
