"""
Check that Stripe keys, configured price ids and the database agree.

Run with: python scripts/verify_stripe_connection.py

Checks:
- STRIPE_SECRET_KEY is set (and warns when it is a live key)
- the database is reachable
- every configured price id exists in Stripe, is active, and has the
  amount and interval the plan registry expects
"""
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from decimal import Decimal

import stripe

from database import DatabaseManager
from quivercore.config import config, PlanConfig

EXPECTED_INTERVAL = {"monthly": "month", "annual": "year"}


def check_price(tier: str, billing_period: str) -> bool:
    price_id = PlanConfig.get_price_id(tier, billing_period)
    label = f"{tier} ({billing_period})"
    if not price_id:
        print(f"  MISSING  {label}: STRIPE_PRICE_ID_{tier.upper()}_{billing_period.upper()} is not set")
        return False

    try:
        price = stripe.Price.retrieve(price_id)
    except stripe.StripeError as e:
        print(f"  ERROR    {label}: {price_id} could not be retrieved: {e.user_message or str(e)}")
        return False

    plan = PlanConfig.get_plan(tier)
    expected = plan.annual_price if billing_period == "annual" else plan.monthly_price
    amount = Decimal(price["unit_amount"] or 0) / 100
    interval = price["recurring"]["interval"] if price["recurring"] else None

    problems = []
    if not price["active"]:
        problems.append("price is archived")
    if amount != expected:
        problems.append(f"amount {amount} != expected {expected}")
    if interval != EXPECTED_INTERVAL[billing_period]:
        problems.append(f"interval {interval} != expected {EXPECTED_INTERVAL[billing_period]}")

    if problems:
        print(f"  MISMATCH {label}: {price_id}: {'; '.join(problems)}")
        return False
    print(f"  OK       {label}: {price_id} ({price['currency'].upper()} {amount}/{interval})")
    return True


def verify() -> bool:
    print("Verifying Stripe configuration...\n")

    if not config.STRIPE_SECRET_KEY:
        print("STRIPE_SECRET_KEY is not set. Add it to your .env file:")
        print("  STRIPE_SECRET_KEY=sk_test_...")
        return False
    if config.STRIPE_SECRET_KEY.startswith("sk_live_"):
        print("Warning: using a LIVE secret key\n")
    if not config.STRIPE_WEBHOOK_SECRET:
        print("Warning: STRIPE_WEBHOOK_SECRET is not set; webhooks will be rejected\n")

    stripe.api_key = config.STRIPE_SECRET_KEY

    print("Database:")
    db_ok = DatabaseManager.test_connection()
    print(f"  {'OK' if db_ok else 'FAILED'}  {DatabaseManager.get_connection_info()}\n")

    print("Prices:")
    results = [
        check_price(tier, billing_period)
        for tier in PlanConfig.TIER_ORDER
        if PlanConfig.get_plan(tier).is_paid
        for billing_period in ("monthly", "annual")
    ]

    ok = db_ok and all(results)
    print(f"\n{'All checks passed' if ok else 'Some checks failed'}")
    return ok


if __name__ == "__main__":
    sys.exit(0 if verify() else 1)
