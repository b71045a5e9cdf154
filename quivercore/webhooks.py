"""
Stripe webhook processing.

Events are validated into typed payload models before dispatch. Each event
is applied at most once (processed ids are stored in ``webhook_events`` in
the same transaction as its effects) and subscription rows only accept
events at least as new as the last one applied.
"""
import logging
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    UserSubscription, BillingHistory, WebhookEvent, SubscriptionStatus,
    InvoiceStatus, BillingPeriod, cents_to_dollars, utcnow
)

from .billing_calendar import from_unix
from .config import PlanConfig
from .errors import InternalError, ValidationError
from .models import (
    StripeEvent, StripeModel, CheckoutSessionPayload, SubscriptionPayload,
    InvoicePayload, PaymentIntentPayload
)
from .notifications import email_service, fire_and_forget
from .overage import settle_overage_payment
from .services import stripe_service

logger = logging.getLogger(__name__)

# An email to send once the event has been committed
Notice = Callable[[], Awaitable[bool]]

# Stripe subscription statuses folded into the ones we store
STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


# ============ SUBSCRIPTION STATE ============

def _supersede_current(db: Session, user_id: str, keep_id: Optional[int], now: datetime) -> None:
    """Cancel the user's other active/trialing rows before activating a new one"""
    query = db.query(UserSubscription).filter(
        UserSubscription.user_id == user_id,
        UserSubscription.status.in_(SubscriptionStatus.CURRENT),
    )
    if keep_id is not None:
        query = query.filter(UserSubscription.id != keep_id)
    superseded = query.update(
        {
            UserSubscription.status: SubscriptionStatus.CANCELED,
            UserSubscription.canceled_at: now,
            UserSubscription.updated_at: now,
        },
        synchronize_session=False,
    )
    if superseded:
        logger.warning(f"Superseded {superseded} existing subscription(s) for user {user_id}")


def _resolve_user_id(db: Session, metadata: Dict[str, str], subscription_id: Optional[str], customer_id: Optional[str]) -> Optional[str]:
    if metadata.get("supabase_user_id"):
        return metadata["supabase_user_id"]
    filters = []
    if subscription_id:
        filters.append(UserSubscription.stripe_subscription_id == subscription_id)
    if customer_id:
        filters.append(UserSubscription.stripe_customer_id == customer_id)
    if not filters:
        return None
    row = (
        db.query(UserSubscription)
        .filter(or_(*filters))
        .order_by(UserSubscription.created_at.desc())
        .first()
    )
    return row.user_id if row else None


def apply_subscription_state(
    db: Session,
    user_id: str,
    stripe_subscription_id: str,
    values: Dict[str, Any],
    event_time: datetime,
) -> bool:
    """
    Upsert the local row for ``stripe_subscription_id``.

    Returns False when the row already reflects a newer event.
    """
    now = utcnow()
    activating = values.get("status") in SubscriptionStatus.CURRENT

    row = (
        db.query(UserSubscription)
        .filter(UserSubscription.stripe_subscription_id == stripe_subscription_id)
        .first()
    )
    if row is None:
        # Adopt the customer placeholder left behind by checkout
        row = (
            db.query(UserSubscription)
            .filter(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.INCOMPLETE,
                UserSubscription.stripe_subscription_id.is_(None),
            )
            .order_by(UserSubscription.created_at.desc())
            .first()
        )

    if row is None:
        if activating:
            _supersede_current(db, user_id, None, now)
        row = UserSubscription(user_id=user_id, stripe_subscription_id=stripe_subscription_id, last_event_at=event_time)
        for key, value in values.items():
            setattr(row, key, value)
        db.add(row)
        db.flush()
        logger.info(f"Created subscription {stripe_subscription_id} for user {user_id} ({row.plan_id}, {row.status})")
        return True

    if row.last_event_at is not None and row.last_event_at > event_time:
        logger.info(f"Ignoring stale event for subscription {stripe_subscription_id}")
        return False

    if activating:
        _supersede_current(db, user_id, row.id, now)

    updated = (
        db.query(UserSubscription)
        .filter(
            UserSubscription.id == row.id,
            or_(UserSubscription.last_event_at.is_(None), UserSubscription.last_event_at <= event_time),
        )
        .update(
            {
                **{getattr(UserSubscription, key): value for key, value in values.items()},
                UserSubscription.stripe_subscription_id: stripe_subscription_id,
                UserSubscription.last_event_at: event_time,
                UserSubscription.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        logger.info(f"Ignoring stale event for subscription {stripe_subscription_id}")
        return False
    return True


def _subscription_values(subscription: SubscriptionPayload) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "status": STATUS_MAP.get(subscription.status, SubscriptionStatus.INCOMPLETE),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": from_unix(subscription.canceled_at),
        "trial_end": from_unix(subscription.trial_end),
    }
    if subscription.customer:
        values["stripe_customer_id"] = subscription.customer

    resolved = PlanConfig.plan_for_price_id(subscription.price_id)
    if resolved is not None:
        values["plan_id"], values["billing_period"] = resolved
        values["stripe_price_id"] = subscription.price_id
    elif subscription.metadata.get("plan_id"):
        values["plan_id"] = subscription.metadata["plan_id"]
        values["billing_period"] = subscription.metadata.get("billing_period", BillingPeriod.MONTHLY)

    period_start = from_unix(subscription.period_start)
    if period_start is not None:
        values["current_period_start"] = period_start
        anchor = from_unix(subscription.billing_cycle_anchor) or period_start
        values["billing_anchor_day"] = anchor.day
    period_end = from_unix(subscription.period_end)
    if period_end is not None:
        values["current_period_end"] = period_end
    return values


# ============ HANDLERS ============

def handle_checkout_completed(db: Session, session: CheckoutSessionPayload, event: StripeEvent) -> None:
    if session.mode != "subscription" or not session.subscription:
        logger.info(f"Checkout session {session.id} is not a subscription checkout, nothing to do")
        return

    user_id = session.metadata.get("supabase_user_id") or session.client_reference_id
    if not user_id:
        logger.warning(f"Checkout session {session.id} has no user reference, skipping")
        return

    existing = (
        db.query(UserSubscription)
        .filter(UserSubscription.stripe_subscription_id == session.subscription)
        .first()
    )
    values: Dict[str, Any] = {"stripe_customer_id": session.customer}
    if existing is None or existing.status == SubscriptionStatus.INCOMPLETE:
        values["status"] = SubscriptionStatus.ACTIVE
    if session.metadata.get("plan_id"):
        values["plan_id"] = session.metadata["plan_id"]
        values["billing_period"] = session.metadata.get("billing_period", BillingPeriod.MONTHLY)

    apply_subscription_state(db, user_id, session.subscription, values, from_unix(event.created))
    logger.info(f"Checkout completed for user {user_id}: subscription {session.subscription}")


def handle_subscription_changed(db: Session, subscription: SubscriptionPayload, event: StripeEvent) -> None:
    user_id = _resolve_user_id(db, subscription.metadata, subscription.id, subscription.customer)
    if not user_id:
        logger.warning(f"Subscription {subscription.id} does not belong to a known user, skipping")
        return
    apply_subscription_state(db, user_id, subscription.id, _subscription_values(subscription), from_unix(event.created))


def handle_subscription_deleted(db: Session, subscription: SubscriptionPayload, event: StripeEvent) -> None:
    user_id = _resolve_user_id(db, subscription.metadata, subscription.id, subscription.customer)
    if not user_id:
        logger.warning(f"Deleted subscription {subscription.id} does not belong to a known user, skipping")
        return
    values = _subscription_values(subscription)
    values["status"] = SubscriptionStatus.CANCELED
    values["canceled_at"] = from_unix(subscription.canceled_at) or from_unix(event.created)
    apply_subscription_state(db, user_id, subscription.id, values, from_unix(event.created))
    logger.info(f"Subscription {subscription.id} for user {user_id} ended; user falls back to free")


def handle_trial_will_end(db: Session, subscription: SubscriptionPayload, event: StripeEvent) -> Optional[Notice]:
    if not subscription.customer or subscription.trial_end is None:
        return None
    email = stripe_service.get_customer_email(subscription.customer)
    if not email:
        logger.warning(f"No email on customer {subscription.customer}, trial reminder not sent")
        return None
    resolved = PlanConfig.plan_for_price_id(subscription.price_id)
    plan = PlanConfig.get_plan(resolved[0] if resolved else subscription.metadata.get("plan_id"))
    trial_end = from_unix(subscription.trial_end).strftime("%B %d, %Y")
    return partial(email_service.send_trial_ending, email, plan.name, trial_end)


def _record_invoice(db: Session, invoice: InvoicePayload, status: str, event: StripeEvent) -> BillingHistory:
    """Insert or transition the billing history row for ``invoice``"""
    row = db.query(BillingHistory).filter(BillingHistory.stripe_invoice_id == invoice.id).first()
    paid_at = from_unix(event.created) if status == InvoiceStatus.PAID else None
    if row is None:
        user_id = _resolve_user_id(db, invoice.metadata, invoice.subscription_id, invoice.customer)
        if not user_id:
            raise ValueError(f"Invoice {invoice.id} does not belong to a known user")
        subscription = None
        if invoice.subscription_id:
            subscription = (
                db.query(UserSubscription)
                .filter(UserSubscription.stripe_subscription_id == invoice.subscription_id)
                .first()
            )
        row = BillingHistory(
            user_id=user_id,
            subscription_id=subscription.id if subscription else None,
            stripe_invoice_id=invoice.id,
            stripe_payment_intent_id=invoice.payment_intent,
            amount_cents=invoice.amount_paid if status == InvoiceStatus.PAID else invoice.amount_due,
            currency=invoice.currency,
            status=status,
            invoice_url=invoice.hosted_invoice_url,
            description=invoice.description or invoice.billing_reason,
            paid_at=paid_at,
        )
        db.add(row)
        db.flush()
        return row

    row.status = status
    if paid_at is not None:
        row.paid_at = paid_at
        row.amount_cents = invoice.amount_paid
    if invoice.hosted_invoice_url:
        row.invoice_url = invoice.hosted_invoice_url
    return row


def handle_invoice_paid(db: Session, invoice: InvoicePayload, event: StripeEvent) -> None:
    _record_invoice(db, invoice, InvoiceStatus.PAID, event)
    if invoice.subscription_id:
        recovered = (
            db.query(UserSubscription)
            .filter(
                UserSubscription.stripe_subscription_id == invoice.subscription_id,
                UserSubscription.status == SubscriptionStatus.PAST_DUE,
            )
            .update({UserSubscription.status: SubscriptionStatus.ACTIVE, UserSubscription.updated_at: utcnow()}, synchronize_session=False)
        )
        if recovered:
            logger.info(f"Subscription {invoice.subscription_id} recovered from past_due")
    logger.info(f"Invoice {invoice.id} paid: {invoice.amount_paid}c")


def handle_invoice_payment_failed(db: Session, invoice: InvoicePayload, event: StripeEvent) -> Optional[Notice]:
    row = _record_invoice(db, invoice, InvoiceStatus.FAILED, event)
    if invoice.subscription_id:
        db.query(UserSubscription).filter(
            UserSubscription.stripe_subscription_id == invoice.subscription_id,
            UserSubscription.status.in_(SubscriptionStatus.CURRENT),
        ).update({UserSubscription.status: SubscriptionStatus.PAST_DUE, UserSubscription.updated_at: utcnow()}, synchronize_session=False)
    logger.warning(f"Invoice {invoice.id} payment failed for user {row.user_id}")

    if not invoice.customer_email:
        return None
    return partial(
        email_service.send_payment_failed,
        invoice.customer_email, str(cents_to_dollars(invoice.amount_due)), invoice.hosted_invoice_url,
    )


def handle_payment_intent_succeeded(db: Session, intent: PaymentIntentPayload, event: StripeEvent) -> None:
    if intent.metadata.get("type") == "overage":
        settle_overage_payment(db, intent.id, succeeded=True)


def handle_payment_intent_failed(db: Session, intent: PaymentIntentPayload, event: StripeEvent) -> None:
    if intent.metadata.get("type") == "overage":
        settle_overage_payment(db, intent.id, succeeded=False)


EVENT_HANDLERS: Dict[str, Tuple[Type[StripeModel], Callable[[Session, Any, StripeEvent], Optional[Notice]]]] = {
    "checkout.session.completed": (CheckoutSessionPayload, handle_checkout_completed),
    "customer.subscription.created": (SubscriptionPayload, handle_subscription_changed),
    "customer.subscription.updated": (SubscriptionPayload, handle_subscription_changed),
    "customer.subscription.deleted": (SubscriptionPayload, handle_subscription_deleted),
    "customer.subscription.trial_will_end": (SubscriptionPayload, handle_trial_will_end),
    "invoice.paid": (InvoicePayload, handle_invoice_paid),
    "invoice.payment_succeeded": (InvoicePayload, handle_invoice_paid),
    "invoice.payment_failed": (InvoicePayload, handle_invoice_payment_failed),
    "payment_intent.succeeded": (PaymentIntentPayload, handle_payment_intent_succeeded),
    "payment_intent.payment_failed": (PaymentIntentPayload, handle_payment_intent_failed),
}


def send_notice(notice: Notice) -> None:
    fire_and_forget(notice())


def process_webhook_event(
    db: Session,
    raw_event: Dict[str, Any],
    schedule: Callable[[Notice], Any] = send_notice,
) -> Dict[str, Any]:
    """
    Apply one verified Stripe event.

    Returns ``{"received": True}``; replays are acknowledged without
    touching state. Any failure rolls the transaction back and raises so
    Stripe retries the delivery. Emails are handed to ``schedule`` only
    after the commit, so a retried delivery never sends one twice.
    """
    try:
        event = StripeEvent.model_validate(raw_event)
    except PayloadValidationError as e:
        logger.error(f"Malformed Stripe event envelope: {e.error_count()} errors")
        raise ValidationError("Invalid event payload", code="INVALID_PAYLOAD")

    if db.query(WebhookEvent.id).filter(WebhookEvent.stripe_event_id == event.id).first():
        logger.info(f"Stripe event {event.id} ({event.type}) already processed")
        return {"received": True, "duplicate": True}

    entry = EVENT_HANDLERS.get(event.type)
    notice = None
    try:
        if entry is None:
            logger.info(f"Unhandled Stripe event type {event.type}, acknowledging")
        else:
            payload_model, handler = entry
            try:
                payload = payload_model.model_validate(event.data.object)
            except PayloadValidationError as e:
                logger.error(f"Malformed {event.type} payload in event {event.id}: {e.error_count()} errors")
                raise ValidationError("Invalid event payload", code="INVALID_PAYLOAD")
            notice = handler(db, payload, event)

        db.add(WebhookEvent(stripe_event_id=event.id, event_type=event.type))
        db.commit()
    except ValidationError:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        if db.query(WebhookEvent.id).filter(WebhookEvent.stripe_event_id == event.id).first():
            logger.info(f"Stripe event {event.id} was processed concurrently")
            return {"received": True, "duplicate": True}
        logger.error(f"Integrity error processing Stripe event {event.id} ({event.type}): {str(e)}")
        raise InternalError("Webhook processing failed", code="WEBHOOK_PROCESSING_FAILED")
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing Stripe event {event.id} ({event.type}): {str(e)}")
        raise InternalError("Webhook processing failed", code="WEBHOOK_PROCESSING_FAILED")

    if notice is not None:
        schedule(notice)
    logger.info(f"Processed Stripe event {event.id} ({event.type})")
    return {"received": True}
