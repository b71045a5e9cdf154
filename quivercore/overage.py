"""
Overage accrual and month-end overage billing.

Overage accumulates on the user's ``monthly_usage_tracking`` row for the
calendar month it happened in. Charges are integer cents and only ever
added with atomic statements. A row flips to ``billed`` exactly once,
which makes the billing job safe to re-run.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import upsert_insert
from models import (
    MonthlyUsageTracking, OveragePayment, BillingHistory, UserSubscription,
    SubscriptionStatus, InvoiceStatus, PaymentStatus, cents_to_dollars, utcnow
)

from .billing_calendar import month_year, previous_month_year
from .config import config, PlanConfig
from .errors import DatabaseError, NotFound, ValidationError
from .services import stripe_service
from .usage_tracking import ensure_ledger_row, get_current_subscription

logger = logging.getLogger(__name__)


def get_billing_customer_id(db: Session, user_id: str) -> Optional[str]:
    """Stripe customer from the user's latest subscription that is not ``incomplete``"""
    subscription = (
        db.query(UserSubscription)
        .filter(
            UserSubscription.user_id == user_id,
            UserSubscription.stripe_customer_id.isnot(None),
            UserSubscription.status != SubscriptionStatus.INCOMPLETE,
        )
        .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
        .first()
    )
    return subscription.stripe_customer_id if subscription else None


def record_overage_charge(
    db: Session,
    user_id: str,
    plan_tier: str,
    unit_count: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Accrue ``unit_count`` prompts of overage at the plan's rate.

    Returns ``{"success", "charge_amount"}``; a storage failure is reported
    as ``success=False`` rather than raised.
    """
    plan = PlanConfig.get_plan(plan_tier)
    if unit_count <= 0:
        raise ValidationError("Overage count must be positive")
    if not plan.is_paid or plan.overage_rate_cents <= 0:
        raise ValidationError(f"Plan '{plan.tier}' does not allow overage", code="OVERAGE_NOT_AVAILABLE")

    now = now or utcnow()
    charge_cents = unit_count * plan.overage_rate_cents
    table = MonthlyUsageTracking.__table__

    try:
        stmt = upsert_insert(db, table).values(
            user_id=user_id,
            month_year=month_year(now),
            plan_tier=plan.tier,
            prompts_used=0,
            overage_prompts=unit_count,
            overage_charges_cents=charge_cents,
            prepaid_charges_cents=0,
            billed=False,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "month_year"],
            set_={
                "overage_prompts": table.c.overage_prompts + stmt.excluded.overage_prompts,
                "overage_charges_cents": table.c.overage_charges_cents + stmt.excluded.overage_charges_cents,
                "updated_at": stmt.excluded.updated_at,
            },
            where=table.c.billed.is_(False),
        )
        result = db.execute(stmt)
        if result.rowcount == 0:
            db.rollback()
            logger.error(f"Overage for user {user_id} not recorded: {month_year(now)} is already billed")
            return {"success": False, "charge_amount": Decimal("0.00")}
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to record overage for user {user_id}: {str(e)}")
        return {"success": False, "charge_amount": Decimal("0.00")}

    logger.info(f"Recorded {unit_count} overage prompts for user {user_id} ({plan.tier}): {charge_cents}c")
    return {"success": True, "charge_amount": cents_to_dollars(charge_cents)}


def _overage_before_month(db: Session, user_id: str, period_start: datetime, month: str) -> int:
    """Overage already accrued in earlier months of a multi-month billing period"""
    return (
        db.query(func.coalesce(func.sum(MonthlyUsageTracking.overage_prompts), 0))
        .filter(
            MonthlyUsageTracking.user_id == user_id,
            MonthlyUsageTracking.month_year >= month_year(period_start),
            MonthlyUsageTracking.month_year < month,
        )
        .scalar()
    ) or 0


def accrue_usage_overage(
    db: Session,
    user_id: str,
    plan_tier: str,
    units_beyond_limit: int,
    now: Optional[datetime] = None,
    period_start: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Raise the month's overage count to ``units_beyond_limit``.

    Only the shortfall is charged, so prompts already accrued (or prepaid
    through a pay-now overage payment) are never charged twice. The count
    never decreases and billed rows are not touched. When the billing
    period started in an earlier month (annual plans), overage already
    accrued in those months is deducted first.
    """
    plan = PlanConfig.get_plan(plan_tier)
    now = now or utcnow()
    month = month_year(now)
    if period_start is not None and month_year(period_start) < month:
        units_beyond_limit -= _overage_before_month(db, user_id, period_start, month)
    if units_beyond_limit <= 0 or plan.overage_rate_cents <= 0:
        return {"success": True, "charged_units": 0, "charge_amount": Decimal("0.00")}

    table = MonthlyUsageTracking.__table__
    try:
        ensure_ledger_row(db, user_id, month, plan.tier, now=now)
        before = (
            db.query(MonthlyUsageTracking.overage_prompts)
            .filter(MonthlyUsageTracking.user_id == user_id, MonthlyUsageTracking.month_year == month)
            .scalar()
        ) or 0
        updated = db.execute(
            table.update()
            .where(
                table.c.user_id == user_id,
                table.c.month_year == month,
                table.c.billed.is_(False),
                table.c.overage_prompts < units_beyond_limit,
            )
            .values(
                overage_prompts=units_beyond_limit,
                overage_charges_cents=table.c.overage_charges_cents
                + (units_beyond_limit - table.c.overage_prompts) * plan.overage_rate_cents,
                plan_tier=plan.tier,
                updated_at=now,
            )
        ).rowcount
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to accrue overage for user {user_id}: {str(e)}")
        return {"success": False, "charged_units": 0, "charge_amount": Decimal("0.00")}

    charged_units = max(0, units_beyond_limit - before) if updated else 0
    if charged_units:
        logger.info(f"Accrued {charged_units} overage prompts for user {user_id} in {month}")
    return {
        "success": True,
        "charged_units": charged_units,
        "charge_amount": cents_to_dollars(charged_units * plan.overage_rate_cents),
    }


def create_overage_payment(
    db: Session,
    user_id: str,
    prompt_count: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Record overage and raise a one-time PaymentIntent for it.

    The ledger write happens first; if it fails no PaymentIntent is
    created.
    """
    subscription = get_current_subscription(db, user_id)
    if subscription is None:
        raise ValidationError("An active paid subscription is required to pay for overage", code="NO_SUBSCRIPTION")
    customer_id = subscription.stripe_customer_id or get_billing_customer_id(db, user_id)
    if not customer_id:
        raise NotFound("No billing customer found for this account", code="CUSTOMER_NOT_FOUND")

    now = now or utcnow()
    month = month_year(now)
    result = record_overage_charge(db, user_id, subscription.plan_id, prompt_count, now=now)
    if not result["success"]:
        raise DatabaseError("Failed to record overage charge")

    amount_cents = int(result["charge_amount"] * 100)
    intent = stripe_service.create_overage_payment_intent(customer_id, user_id, month, prompt_count, amount_cents)

    try:
        db.add(OveragePayment(
            user_id=user_id,
            month_year=month,
            prompt_count=prompt_count,
            amount_cents=amount_cents,
            stripe_payment_intent_id=intent.id,
            status=PaymentStatus.PENDING,
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store overage payment {intent.id} for user {user_id}: {str(e)}")
        raise DatabaseError("Failed to store overage payment")

    return {
        "success": True,
        "charge_amount": result["charge_amount"],
        "payment_intent_id": intent.id,
        "client_secret": intent.client_secret,
        "month_year": month,
    }


def settle_overage_payment(db: Session, payment_intent_id: str, succeeded: bool) -> bool:
    """
    Apply a PaymentIntent outcome to its pending overage payment.

    A succeeded payment is credited to the month's ``prepaid_charges_cents``
    so the month-end job only invoices what is still outstanding. The
    pending -> final transition happens once; replays are no-ops. Commits
    are left to the caller.
    """
    payment = (
        db.query(OveragePayment)
        .filter(OveragePayment.stripe_payment_intent_id == payment_intent_id)
        .first()
    )
    if payment is None:
        logger.warning(f"No overage payment recorded for payment intent {payment_intent_id}")
        return False

    new_status = PaymentStatus.SUCCEEDED if succeeded else PaymentStatus.FAILED
    updated = (
        db.query(OveragePayment)
        .filter(OveragePayment.id == payment.id, OveragePayment.status == PaymentStatus.PENDING)
        .update({OveragePayment.status: new_status, OveragePayment.updated_at: utcnow()}, synchronize_session=False)
    )
    if not updated:
        return False

    if succeeded:
        credited = db.query(MonthlyUsageTracking).filter(
            MonthlyUsageTracking.user_id == payment.user_id,
            MonthlyUsageTracking.month_year == payment.month_year,
            MonthlyUsageTracking.billed.is_(False),
        ).update(
            {MonthlyUsageTracking.prepaid_charges_cents: MonthlyUsageTracking.prepaid_charges_cents + payment.amount_cents},
            synchronize_session=False,
        )
        if credited:
            logger.info(f"Overage payment {payment_intent_id} succeeded: {payment.amount_cents}c prepaid for {payment.month_year}")
        else:
            logger.warning(
                f"Overage payment {payment_intent_id} succeeded after {payment.month_year} was invoiced; "
                f"{payment.amount_cents}c needs a manual refund"
            )
    else:
        logger.warning(f"Overage payment {payment_intent_id} failed for user {payment.user_id}")
    return True


def _mark_billed(db: Session, row_id: int, invoice_id: Optional[str], now: datetime) -> bool:
    updated = (
        db.query(MonthlyUsageTracking)
        .filter(MonthlyUsageTracking.id == row_id, MonthlyUsageTracking.billed.is_(False))
        .update(
            {
                MonthlyUsageTracking.billed: True,
                MonthlyUsageTracking.billed_at: now,
                MonthlyUsageTracking.stripe_invoice_id: invoice_id,
                MonthlyUsageTracking.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return bool(updated)


def bill_user_overage(db: Session, row: MonthlyUsageTracking, now: datetime) -> Optional[int]:
    """
    Invoice one ledger row and mark it billed.

    Returns the amount invoiced in cents (0 when prepayments already cover
    the charges), or None when another run billed the row first.
    """
    user_id = row.user_id
    customer_id = get_billing_customer_id(db, user_id)
    if not customer_id:
        raise ValueError("No Stripe customer id found for user")

    outstanding = row.outstanding_cents
    invoice = None
    if outstanding > 0:
        invoice = stripe_service.create_overage_invoice(
            customer_id, user_id, row.month_year, row.overage_prompts, outstanding
        )

    if not _mark_billed(db, row.id, invoice.id if invoice else None, now):
        db.rollback()
        logger.info(f"Ledger {row.month_year} for user {user_id} was billed concurrently, skipping")
        return None

    if invoice is not None:
        subscription = get_current_subscription(db, user_id)
        db.add(BillingHistory(
            user_id=user_id,
            subscription_id=subscription.id if subscription else None,
            stripe_invoice_id=invoice.id,
            amount_cents=outstanding,
            currency=config.STRIPE_CURRENCY,
            status=InvoiceStatus.PENDING,
            invoice_url=getattr(invoice, "hosted_invoice_url", None),
            description=f"Overage charges for {row.month_year}: {row.overage_prompts} prompts",
        ))
    db.commit()
    return outstanding


def bill_monthly_overages(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Invoice last month's unbilled overage for every user.

    Rows are read in id-ordered batches. A failure for one user is recorded
    in ``errors`` and the run continues with the next user.
    """
    now = now or utcnow()
    month = previous_month_year(now)
    users_billed = 0
    total_cents = 0
    errors: List[Dict[str, str]] = []

    logger.info(f"Starting overage billing for {month}")

    last_id = 0
    while True:
        batch = (
            db.query(MonthlyUsageTracking)
            .filter(
                MonthlyUsageTracking.month_year == month,
                MonthlyUsageTracking.overage_prompts > 0,
                MonthlyUsageTracking.overage_charges_cents > 0,
                MonthlyUsageTracking.billed.is_(False),
                MonthlyUsageTracking.id > last_id,
            )
            .order_by(MonthlyUsageTracking.id)
            .limit(config.JOB_BATCH_SIZE)
            .all()
        )
        if not batch:
            break
        last_id = batch[-1].id

        for row in batch:
            user_id = row.user_id
            try:
                billed_cents = bill_user_overage(db, row, now)
                if billed_cents is not None:
                    total_cents += billed_cents
                    users_billed += 1
            except Exception as e:
                db.rollback()
                logger.error(f"Overage billing failed for user {user_id} ({month}): {str(e)}")
                errors.append({"user_id": user_id, "error": str(e)})

    total_amount = cents_to_dollars(total_cents)
    logger.info(f"Overage billing complete for {month}: {users_billed} billed, ${total_amount}, {len(errors)} errors")
    return {
        "success": True,
        "month_year": month,
        "users_billed": users_billed,
        "total_amount": str(total_amount),
        "errors": errors,
    }
