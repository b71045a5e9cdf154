"""
Usage tracking and period resets.

Counters live in ``usage_tracking`` (one row per user, metric and period)
and are only changed with INSERT ... ON CONFLICT statements. Recording
usage is best effort: a storage failure is logged and never blocks the
user action that triggered it.
"""
import logging
from datetime import date, datetime
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import upsert_insert
from models import (
    UsageRecord, MonthlyUsageTracking, UserSubscription, MetricType,
    SubscriptionStatus, BillingPeriod, utcnow
)

from .billing_calendar import (
    advance_annual_period, annual_period_containing, calendar_period,
    month_year, next_anniversary
)
from .config import config

logger = logging.getLogger(__name__)


def get_current_subscription(db: Session, user_id: str) -> Optional[UserSubscription]:
    """The user's active or trialing subscription, if any"""
    return (
        db.query(UserSubscription)
        .filter(
            UserSubscription.user_id == user_id,
            UserSubscription.status.in_(SubscriptionStatus.CURRENT),
        )
        .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
        .first()
    )


def get_billing_period(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    subscription: Optional[UserSubscription] = None,
) -> Tuple[datetime, datetime]:
    """
    (start, exclusive end) of the usage period ``now`` falls in.

    Annual subscriptions use their stored anniversary window, rolled forward
    when the anniversary job has not advanced it yet; everyone else uses the
    calendar month.
    """
    if subscription is None:
        subscription = get_current_subscription(db, user_id)
    if (
        subscription is not None
        and subscription.is_annual
        and subscription.current_period_start
        and subscription.current_period_end
    ):
        now = now or utcnow()
        if now < subscription.current_period_end:
            return subscription.current_period_start, subscription.current_period_end
        return annual_period_containing(
            subscription.current_period_start, now, subscription.billing_anchor_day
        )
    return calendar_period(now)


def _increment_usage(
    db: Session,
    user_id: str,
    metric_type: str,
    amount: int,
    period: Tuple[datetime, datetime],
    metadata: Optional[dict],
    now: datetime,
) -> None:
    table = UsageRecord.__table__
    stmt = upsert_insert(db, table).values(
        user_id=user_id,
        metric_type=metric_type,
        count=amount,
        period_start=period[0],
        period_end=period[1],
        metadata=metadata,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "metric_type", "period_start"],
        set_={
            "count": table.c.count + stmt.excluded.count,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)


def _increment_prompts_used(db: Session, user_id: str, month: str, plan_tier: str, amount: int, now: datetime) -> None:
    table = MonthlyUsageTracking.__table__
    stmt = upsert_insert(db, table).values(
        user_id=user_id,
        month_year=month,
        plan_tier=plan_tier,
        prompts_used=amount,
        overage_prompts=0,
        overage_charges_cents=0,
        prepaid_charges_cents=0,
        billed=False,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "month_year"],
        set_={
            "prompts_used": table.c.prompts_used + stmt.excluded.prompts_used,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)


def ensure_ledger_row(db: Session, user_id: str, month: str, plan_tier: Optional[str], now: Optional[datetime] = None) -> None:
    """Create the month's ledger row if it is missing; existing rows are left untouched"""
    now = now or utcnow()
    stmt = upsert_insert(db, MonthlyUsageTracking.__table__).values(
        user_id=user_id,
        month_year=month,
        plan_tier=plan_tier,
        prompts_used=0,
        overage_prompts=0,
        overage_charges_cents=0,
        prepaid_charges_cents=0,
        billed=False,
        created_at=now,
        updated_at=now,
    )
    db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id", "month_year"]))


def open_usage_period(db: Session, user_id: str, period: Tuple[datetime, datetime], now: Optional[datetime] = None) -> None:
    """Start every metric of a new period at zero without touching earlier periods"""
    now = now or utcnow()
    table = UsageRecord.__table__
    for metric_type in MetricType.ALL:
        stmt = upsert_insert(db, table).values(
            user_id=user_id,
            metric_type=metric_type,
            count=0,
            period_start=period[0],
            period_end=period[1],
            created_at=now,
            updated_at=now,
        )
        db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id", "metric_type", "period_start"]))


def record_usage(
    db: Session,
    user_id: str,
    metric_type: str,
    amount: int = 1,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Add ``amount`` to the user's counter for the current period.

    Never raises; returns False when the write failed or the input was
    rejected.
    """
    if metric_type not in MetricType.ALL:
        logger.error(f"Ignoring usage for unknown metric '{metric_type}' (user {user_id})")
        return False
    if amount <= 0:
        logger.error(f"Ignoring non-positive usage amount {amount} for user {user_id}")
        return False

    now = now or utcnow()
    try:
        subscription = get_current_subscription(db, user_id)
        period = get_billing_period(db, user_id, now=now, subscription=subscription)
        _increment_usage(db, user_id, metric_type, amount, period, metadata, now)

        if metric_type == MetricType.PROMPT_CREATED:
            plan_tier = subscription.plan_id if subscription else "free"
            _increment_prompts_used(db, user_id, month_year(now), plan_tier, amount, now)

        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to record {metric_type} usage for user {user_id}: {str(e)}")
        return False


def get_period_usage(db: Session, user_id: str, metric_type: str, period_start: datetime) -> int:
    """Count recorded for one metric in the period starting at ``period_start``"""
    total = (
        db.query(func.coalesce(func.sum(UsageRecord.count), 0))
        .filter(
            UsageRecord.user_id == user_id,
            UsageRecord.metric_type == metric_type,
            UsageRecord.period_start == period_start,
        )
        .scalar()
    )
    return int(total or 0)


def _iter_current_subscriptions(db: Session, billing_period: Optional[str] = None) -> Iterator[UserSubscription]:
    """Active/trialing subscriptions, read in id-ordered batches"""
    last_id = 0
    while True:
        query = db.query(UserSubscription).filter(
            UserSubscription.status.in_(SubscriptionStatus.CURRENT),
            UserSubscription.id > last_id,
        )
        if billing_period:
            query = query.filter(UserSubscription.billing_period == billing_period)
        batch = query.order_by(UserSubscription.id).limit(config.JOB_BATCH_SIZE).all()
        if not batch:
            return
        for subscription in batch:
            yield subscription
        last_id = batch[-1].id


def reset_monthly_usage(db: Session, now: Optional[datetime] = None) -> Dict:
    """
    Open the new calendar period for every monthly subscription.

    Annual subscriptions are skipped and counted; their reset happens on the
    anniversary. Unbilled overage from earlier months is left alone.
    """
    now = now or utcnow()
    period = calendar_period(now)
    month = month_year(now)
    users_reset = 0
    annual_skipped = 0
    errors: List[Dict[str, str]] = []

    logger.info(f"Starting monthly usage reset for {month}")

    for subscription in _iter_current_subscriptions(db):
        user_id = subscription.user_id
        if subscription.billing_period == BillingPeriod.ANNUAL:
            annual_skipped += 1
            continue
        try:
            open_usage_period(db, user_id, period, now=now)
            ensure_ledger_row(db, user_id, month, subscription.plan_id, now=now)
            db.commit()
            users_reset += 1
        except Exception as e:
            db.rollback()
            logger.error(f"Monthly usage reset failed for user {user_id}: {str(e)}")
            errors.append({"user_id": user_id, "error": str(e)})

    logger.info(
        f"Monthly usage reset complete: {users_reset} reset, "
        f"{annual_skipped} annual skipped, {len(errors)} errors"
    )
    return {
        "success": True,
        "month_year": month,
        "users_reset": users_reset,
        "annual_skipped": annual_skipped,
        "errors": errors,
    }


def reset_annual_anniversaries(db: Session, today: Optional[date] = None) -> Dict:
    """
    Roll annual subscriptions whose anniversary has arrived into their current year.

    Subscriptions whose anniversary fell on a day the job did not run are
    caught up, across several years if needed. The period boundaries are
    advanced with a compare-and-swap on the old start, so repeated runs
    reset each user once per anniversary.
    """
    now = utcnow()
    today = today or now.date()
    users_reset = 0
    anniversaries_checked = 0
    errors: List[Dict[str, str]] = []

    logger.info(f"Checking annual anniversaries for {today.isoformat()}")

    for subscription in _iter_current_subscriptions(db, billing_period=BillingPeriod.ANNUAL):
        user_id = subscription.user_id
        anniversaries_checked += 1
        try:
            period_start = subscription.current_period_start
            if period_start is None:
                raise ValueError("annual subscription has no current_period_start")

            anchor_day = subscription.billing_anchor_day or period_start.day
            if next_anniversary(period_start, anchor_day) > today:
                continue

            new_start, new_end = advance_annual_period(period_start, anchor_day)
            while new_end.date() <= today:
                new_start, new_end = advance_annual_period(new_start, anchor_day)
            updated = (
                db.query(UserSubscription)
                .filter(
                    UserSubscription.id == subscription.id,
                    UserSubscription.current_period_start == period_start,
                )
                .update(
                    {
                        UserSubscription.current_period_start: new_start,
                        UserSubscription.current_period_end: new_end,
                        UserSubscription.billing_anchor_day: anchor_day,
                        UserSubscription.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                db.rollback()
                logger.info(f"Annual period for user {user_id} already advanced, skipping")
                continue

            open_usage_period(db, user_id, (new_start, new_end), now=now)
            db.commit()
            users_reset += 1
            logger.info(f"Annual usage reset for user {user_id}: new period {new_start.date()} - {new_end.date()}")
        except Exception as e:
            db.rollback()
            logger.error(f"Anniversary reset failed for user {user_id}: {str(e)}")
            errors.append({"user_id": user_id, "error": str(e)})

    logger.info(
        f"Anniversary check complete: {anniversaries_checked} checked, "
        f"{users_reset} reset, {len(errors)} errors"
    )
    return {
        "success": True,
        "users_reset": users_reset,
        "anniversaries_checked": anniversaries_checked,
        "errors": errors,
    }
