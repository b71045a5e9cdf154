"""
Subscription lifecycle operations initiated by the user.

Stripe is the source of truth for subscription state; these functions ask
Stripe to make a change and mirror the parts the UI needs immediately.
Webhooks later reconcile everything else.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models import UserSubscription, SubscriptionStatus, utcnow

from .auth import CurrentUser
from .billing_calendar import calculate_prorated_price, next_billing_date
from .config import config, PlanConfig
from .errors import Conflict, NotFound, ValidationError
from .services import stripe_service
from .usage_tracking import get_current_subscription

logger = logging.getLogger(__name__)


def get_customer_id(db: Session, user_id: str) -> Optional[str]:
    """Most recent Stripe customer id stored for the user, in any status"""
    row = (
        db.query(UserSubscription)
        .filter(UserSubscription.user_id == user_id, UserSubscription.stripe_customer_id.isnot(None))
        .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
        .first()
    )
    return row.stripe_customer_id if row else None


def get_effective_subscription(db: Session, user_id: str) -> Dict[str, Any]:
    """Current subscription with its plan, or the free plan when there is none"""
    subscription = get_current_subscription(db, user_id)
    if subscription is None:
        return {
            "plan": PlanConfig.get_plan("free").to_dict(),
            "subscription": None,
            "is_free": True,
        }
    return {
        "plan": PlanConfig.get_plan(subscription.plan_id).to_dict(),
        "subscription": subscription.to_dict(),
        "is_free": False,
    }


def start_checkout(
    db: Session,
    user: CurrentUser,
    price_id: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Open a Stripe Checkout Session for a paid plan"""
    resolved = PlanConfig.plan_for_price_id(price_id)
    if resolved is None:
        raise ValidationError("Unknown price id", code="INVALID_PRICE")
    plan_id, billing_period = resolved

    if get_current_subscription(db, user.id) is not None:
        raise Conflict(
            "You already have an active subscription; change plans instead",
            code="SUBSCRIPTION_EXISTS",
        )

    existing_customer_id = get_customer_id(db, user.id)
    customer_id = stripe_service.get_or_create_customer(user.id, user.email, existing_customer_id)
    if existing_customer_id is None:
        # Keep the customer so a retried checkout reuses it
        db.add(UserSubscription(
            user_id=user.id,
            plan_id=plan_id,
            billing_period=billing_period,
            status=SubscriptionStatus.INCOMPLETE,
            stripe_customer_id=customer_id,
        ))
        db.commit()

    now = now or utcnow()
    session = stripe_service.create_checkout_session(
        customer_id=customer_id,
        user_id=user.id,
        price_id=price_id,
        plan_id=plan_id,
        billing_period=billing_period,
        success_url=success_url or f"{config.APP_BASE_URL}/settings/billing?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{config.APP_BASE_URL}/pricing",
        now=now,
    )

    plan = PlanConfig.get_plan(plan_id)
    prorated_amount = None
    if billing_period == "monthly":
        prorated_amount = str(calculate_prorated_price(plan.monthly_price, now))

    return {
        "session_id": session.id,
        "url": session.url,
        "plan_id": plan_id,
        "billing_period": billing_period,
        "prorated_amount": prorated_amount,
        "next_billing_date": next_billing_date(billing_period, now),
    }


def open_billing_portal(db: Session, user_id: str, return_url: Optional[str] = None) -> str:
    customer_id = get_customer_id(db, user_id)
    if not customer_id:
        raise NotFound("No billing account found for this user", code="CUSTOMER_NOT_FOUND")
    session = stripe_service.create_billing_portal_session(
        customer_id, return_url or f"{config.APP_BASE_URL}/settings/billing"
    )
    return session.url


def cancel_user_subscription(db: Session, user_id: str, subscription_id: str, immediate: bool = False) -> Dict[str, Any]:
    """Cancel a subscription the user owns; anything else is reported as not found"""
    subscription = (
        db.query(UserSubscription)
        .filter(
            UserSubscription.stripe_subscription_id == subscription_id,
            UserSubscription.user_id == user_id,
        )
        .first()
    )
    if subscription is None:
        raise NotFound("Subscription not found", code="SUBSCRIPTION_NOT_FOUND")
    if subscription.status == SubscriptionStatus.CANCELED:
        raise ValidationError("Subscription is already canceled", code="ALREADY_CANCELED")

    stripe_service.cancel_subscription(subscription_id, immediate=immediate)

    now = utcnow()
    if immediate:
        subscription.status = SubscriptionStatus.CANCELED
        subscription.canceled_at = now
    else:
        subscription.cancel_at_period_end = True
    subscription.updated_at = now
    db.commit()

    logger.info(f"User {user_id} canceled subscription {subscription_id} (immediate={immediate})")
    return {"success": True, "subscription": subscription.to_dict()}


def _require_plan_change(db: Session, user_id: str, new_price_id: str):
    subscription = get_current_subscription(db, user_id)
    if subscription is None or not subscription.stripe_subscription_id:
        raise NotFound("No active subscription to change", code="SUBSCRIPTION_NOT_FOUND")

    resolved = PlanConfig.plan_for_price_id(new_price_id)
    if resolved is None:
        raise ValidationError("Unknown price id", code="INVALID_PRICE")
    if resolved == (subscription.plan_id, subscription.billing_period):
        raise ValidationError("You are already on this plan", code="SAME_PLAN")
    return subscription, resolved


def change_plan(db: Session, user_id: str, new_price_id: str) -> Dict[str, Any]:
    """Move the user's subscription to ``new_price_id`` with Stripe proration"""
    subscription, (plan_id, billing_period) = _require_plan_change(db, user_id, new_price_id)
    previous_plan = subscription.plan_id

    stripe_service.update_subscription_plan(subscription.stripe_subscription_id, new_price_id)

    updated = (
        db.query(UserSubscription)
        .filter(UserSubscription.id == subscription.id, UserSubscription.plan_id == previous_plan)
        .update(
            {
                UserSubscription.plan_id: plan_id,
                UserSubscription.billing_period: billing_period,
                UserSubscription.stripe_price_id: new_price_id,
                UserSubscription.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if not updated:
        logger.info(f"Plan for subscription {subscription.stripe_subscription_id} changed concurrently; webhook will reconcile")

    logger.info(f"User {user_id} moved from {previous_plan} to {plan_id} ({billing_period})")
    return {"success": True, "plan_id": plan_id, "billing_period": billing_period}


def preview_plan_change(db: Session, user_id: str, new_price_id: str) -> Dict[str, Any]:
    subscription, (plan_id, billing_period) = _require_plan_change(db, user_id, new_price_id)
    invoice = stripe_service.preview_plan_change(
        subscription.stripe_customer_id, subscription.stripe_subscription_id, new_price_id
    )
    return {
        "plan_id": plan_id,
        "billing_period": billing_period,
        "amount_due": invoice["amount_due"],
        "currency": invoice["currency"],
    }
