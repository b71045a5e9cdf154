"""
Quota evaluation against the plan registry.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models import MonthlyUsageTracking, MetricType, Prompt, cents_to_dollars

from .billing_calendar import month_year
from .config import PlanConfig, PlanLimits
from .usage_tracking import get_current_subscription, get_billing_period, get_period_usage

logger = logging.getLogger(__name__)

FEATURES = ("prompts", "storage")


def evaluate_limit(plan: PlanLimits, feature: str, current: int, billing_period: str = "monthly") -> Dict[str, Any]:
    """
    Pure limit math for one feature.

    ``remaining`` is None and ``percent_used`` 0 for unlimited features;
    ``percent_used`` is not capped while ``display_percent`` stops at 100.
    """
    limit = plan.limit_for(feature, billing_period)
    unlimited = limit == -1

    if unlimited:
        remaining = None
        percent_used = 0.0
        allowed = True
    else:
        remaining = max(0, limit - current)
        percent_used = round(current / limit * 100, 2) if limit > 0 else 100.0
        allowed = current < limit

    next_plan = PlanConfig.get_next_tier(plan.tier, feature)
    add_on = PlanConfig.get_add_on(feature)

    return {
        "feature": feature,
        "allowed": allowed,
        "current": current,
        "limit": limit,
        "remaining": remaining,
        "percent_used": percent_used,
        "display_percent": min(100.0, percent_used),
        "upgrade_required": not allowed and not plan.is_paid,
        "plan_tier": plan.tier,
        "next_tier": next_plan.tier if next_plan else None,
        "next_tier_limit": next_plan.limit_for(feature, billing_period) if next_plan else None,
        "overage_rate": str(plan.overage_rate) if feature == "prompts" else None,
        "add_ons_available": plan.is_paid and bool(add_on),
        "add_on_price": str(cents_to_dollars(add_on["price_cents"])) if add_on else None,
        "add_on_size": add_on.get("size"),
    }


def get_storage_used(db: Session, user_id: str) -> int:
    return (
        db.query(Prompt)
        .filter(Prompt.user_id == user_id, Prompt.archived.is_(False))
        .count()
    )


def check_usage_limit(db: Session, user_id: str, feature: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Usage of ``feature`` against the user's plan; users without a subscription get free limits"""
    if feature not in FEATURES:
        raise ValueError(f"Unknown feature: {feature}")

    subscription = get_current_subscription(db, user_id)
    plan = PlanConfig.get_plan(subscription.plan_id if subscription else "free")
    billing_period = subscription.billing_period if subscription else "monthly"

    if feature == "storage":
        current = get_storage_used(db, user_id)
    else:
        period_start, _ = get_billing_period(db, user_id, now=now, subscription=subscription)
        current = get_period_usage(db, user_id, MetricType.PROMPT_CREATED, period_start)

    return evaluate_limit(plan, feature, current, billing_period)


def get_usage_summary(db: Session, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Dashboard summary: plan, period, per-feature quota and this month's overage"""
    subscription = get_current_subscription(db, user_id)
    plan = PlanConfig.get_plan(subscription.plan_id if subscription else "free")
    billing_period = subscription.billing_period if subscription else "monthly"
    period_start, period_end = get_billing_period(db, user_id, now=now, subscription=subscription)

    month = month_year(now)
    ledger = (
        db.query(MonthlyUsageTracking)
        .filter(MonthlyUsageTracking.user_id == user_id, MonthlyUsageTracking.month_year == month)
        .first()
    )

    prompts_used = get_period_usage(db, user_id, MetricType.PROMPT_CREATED, period_start)
    executions = get_period_usage(db, user_id, MetricType.PROMPT_EXECUTION, period_start)

    return {
        "plan_tier": plan.tier,
        "plan_name": plan.name,
        "billing_period": billing_period,
        "period_start": period_start.isoformat(),
        "period_end": period_end.isoformat(),
        "prompts": evaluate_limit(plan, "prompts", prompts_used, billing_period),
        "storage": evaluate_limit(plan, "storage", get_storage_used(db, user_id), billing_period),
        "executions": executions,
        "overage": {
            "month_year": month,
            "overage_prompts": ledger.overage_prompts if ledger else 0,
            "overage_charges": str(ledger.overage_charges) if ledger else "0.00",
            "billed": ledger.billed if ledger else False,
        },
    }
