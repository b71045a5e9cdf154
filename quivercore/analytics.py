"""
Revenue analytics for the admin dashboard.
MRR, subscriptions per plan, churn, overage revenue and failed payments.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import (
    UserSubscription, BillingHistory, SubscriptionStatus, InvoiceStatus,
    BillingPeriod, cents_to_dollars, utcnow
)

from .config import PlanConfig

logger = logging.getLogger(__name__)

CHURN_WINDOW_DAYS = 30
OVERAGE_MONTHS = 12
OVERAGE_DESCRIPTION_PREFIX = "Overage charges"


def monthly_value(plan_id: str, billing_period: str) -> Decimal:
    """Monthly recurring value of one subscription; annual plans count a twelfth"""
    plan = PlanConfig.get_plan(plan_id)
    if billing_period == BillingPeriod.ANNUAL:
        return (plan.annual_price / 12).quantize(Decimal("0.01"))
    return plan.monthly_price


def get_active_by_plan(db: Session) -> Dict[str, int]:
    rows = (
        db.query(UserSubscription.plan_id, func.count(UserSubscription.id))
        .filter(UserSubscription.status.in_(SubscriptionStatus.CURRENT))
        .group_by(UserSubscription.plan_id)
        .all()
    )
    counts = {tier: 0 for tier in PlanConfig.TIER_ORDER if tier != "free"}
    for plan_id, count in rows:
        counts[plan_id] = count
    return counts


def get_mrr(db: Session) -> Decimal:
    rows = (
        db.query(UserSubscription.plan_id, UserSubscription.billing_period, func.count(UserSubscription.id))
        .filter(UserSubscription.status == SubscriptionStatus.ACTIVE)
        .group_by(UserSubscription.plan_id, UserSubscription.billing_period)
        .all()
    )
    return sum((monthly_value(plan_id, period) * count for plan_id, period, count in rows), Decimal("0.00"))


def get_churn(db: Session, now: datetime) -> Dict:
    """Subscriptions canceled in the window against those live at its start"""
    since = now - timedelta(days=CHURN_WINDOW_DAYS)
    churned = (
        db.query(func.count(UserSubscription.id))
        .filter(
            UserSubscription.status == SubscriptionStatus.CANCELED,
            UserSubscription.canceled_at >= since,
            UserSubscription.stripe_subscription_id.isnot(None),
        )
        .scalar()
    ) or 0
    active = (
        db.query(func.count(UserSubscription.id))
        .filter(UserSubscription.status.in_(SubscriptionStatus.CURRENT))
        .scalar()
    ) or 0
    base = active + churned
    return {
        "window_days": CHURN_WINDOW_DAYS,
        "churned": churned,
        "churn_rate": round(churned / base * 100, 2) if base else 0.0,
    }


def get_overage_revenue_by_month(db: Session, now: datetime) -> Dict[str, str]:
    since = now - timedelta(days=OVERAGE_MONTHS * 31)
    rows = (
        db.query(BillingHistory)
        .filter(
            BillingHistory.description.like(f"{OVERAGE_DESCRIPTION_PREFIX}%"),
            BillingHistory.status == InvoiceStatus.PAID,
            BillingHistory.created_at >= since,
        )
        .order_by(BillingHistory.created_at)
        .all()
    )
    totals: Dict[str, int] = OrderedDict()
    for row in rows:
        key = row.created_at.strftime("%Y-%m")
        totals[key] = totals.get(key, 0) + row.amount_cents
    return {month: str(cents_to_dollars(cents)) for month, cents in totals.items()}


def get_failed_payments(db: Session, now: datetime) -> Dict:
    since = now - timedelta(days=CHURN_WINDOW_DAYS)
    count, total = (
        db.query(func.count(BillingHistory.id), func.coalesce(func.sum(BillingHistory.amount_cents), 0))
        .filter(BillingHistory.status == InvoiceStatus.FAILED, BillingHistory.created_at >= since)
        .one()
    )
    return {"count": count, "amount": str(cents_to_dollars(total))}


def get_revenue_summary(db: Session, now: Optional[datetime] = None) -> dict:
    """Retrieve the revenue dashboard payload."""
    now = now or utcnow()
    active_by_plan = get_active_by_plan(db)
    summary = {
        "mrr": str(get_mrr(db)),
        "active_subscriptions": sum(active_by_plan.values()),
        "active_by_plan": active_by_plan,
        "churn": get_churn(db, now),
        "overage_revenue_by_month": get_overage_revenue_by_month(db, now),
        "failed_payments": get_failed_payments(db, now),
        "generated_at": now.isoformat(),
    }
    logger.info(f"Revenue summary: MRR ${summary['mrr']}, {summary['active_subscriptions']} active subscriptions")
    return summary
