from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from models import (
    BillingHistory, MonthlyUsageTracking, OveragePayment, PaymentStatus,
    SubscriptionStatus, UserSubscription, WebhookEvent
)
from quivercore.billing_calendar import to_unix
from quivercore.errors import InternalError, ValidationError
from quivercore.usage_tracking import get_current_subscription
from quivercore.webhooks import process_webhook_event

from conftest import add_subscription

T0 = to_unix(datetime(2025, 8, 15, 12, 0))


def event(event_id, event_type, obj, created=T0):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }


def subscription_object(sub_id="sub_1", status="active", price_id="price_explorer_monthly", user_id="user-1", **extra):
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": f"cus_{user_id}",
        "status": status,
        "metadata": {"supabase_user_id": user_id},
        "items": {
            "object": "list",
            "data": [{
                "id": "si_1",
                "price": {"id": price_id, "object": "price"},
                "current_period_start": to_unix(datetime(2025, 8, 15, 12, 0)),
                "current_period_end": to_unix(datetime(2025, 9, 1)),
            }],
        },
        "cancel_at_period_end": False,
        "billing_cycle_anchor": to_unix(datetime(2025, 9, 1)),
    }
    obj.update(extra)
    return obj


def invoice_object(invoice_id="in_1", sub_id="sub_1", user_id="user-1", **extra):
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "customer": f"cus_{user_id}",
        "customer_email": "user@example.com",
        "subscription": sub_id,
        "amount_due": 2900,
        "amount_paid": 2900,
        "currency": "usd",
        "billing_reason": "subscription_cycle",
        "hosted_invoice_url": f"https://invoice.stripe.com/{invoice_id}",
    }
    obj.update(extra)
    return obj


def reload(db, model, **filters):
    row = db.query(model).filter_by(**filters).one()
    db.refresh(row)
    return row


def test_checkout_completed_adopts_the_pending_customer_row(db):
    db.add(UserSubscription(
        user_id="user-1", plan_id="explorer", status=SubscriptionStatus.INCOMPLETE,
        stripe_customer_id="cus_user-1",
    ))
    db.commit()

    result = process_webhook_event(db, event("evt_1", "checkout.session.completed", {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_user-1",
        "subscription": "sub_1",
        "client_reference_id": "user-1",
        "metadata": {"supabase_user_id": "user-1", "plan_id": "explorer", "billing_period": "monthly"},
    }))

    assert result == {"received": True}
    rows = db.query(UserSubscription).filter_by(user_id="user-1").all()
    assert len(rows) == 1
    db.refresh(rows[0])
    assert rows[0].stripe_subscription_id == "sub_1"
    assert rows[0].status == SubscriptionStatus.ACTIVE
    assert rows[0].plan_id == "explorer"


def test_subscription_created_inserts_row_from_price(db):
    process_webhook_event(db, event("evt_2", "customer.subscription.created", subscription_object(
        price_id="price_researcher_annual",
    )))

    row = reload(db, UserSubscription, stripe_subscription_id="sub_1")
    assert row.user_id == "user-1"
    assert row.plan_id == "researcher"
    assert row.billing_period == "annual"
    assert row.stripe_customer_id == "cus_user-1"
    assert row.current_period_start == datetime(2025, 8, 15, 12, 0)
    assert row.current_period_end == datetime(2025, 9, 1)
    assert row.billing_anchor_day == 1
    assert row.last_event_at == datetime(2025, 8, 15, 12, 0)


def test_out_of_order_updates_are_ignored(db):
    process_webhook_event(db, event("evt_new", "customer.subscription.updated", subscription_object(), created=T0 + 60))
    process_webhook_event(db, event("evt_old", "customer.subscription.updated", subscription_object(status="past_due"), created=T0))

    row = reload(db, UserSubscription, stripe_subscription_id="sub_1")
    assert row.status == SubscriptionStatus.ACTIVE
    # Both deliveries are acknowledged
    assert db.query(WebhookEvent).count() == 2


def test_replayed_event_is_applied_once(db):
    process_webhook_event(db, event("evt_3", "customer.subscription.created", subscription_object()))
    first = reload(db, UserSubscription, stripe_subscription_id="sub_1")
    first_updated = first.updated_at

    again = process_webhook_event(db, event("evt_3", "customer.subscription.created", subscription_object(status="canceled")))

    assert again == {"received": True, "duplicate": True}
    row = reload(db, UserSubscription, stripe_subscription_id="sub_1")
    assert row.status == SubscriptionStatus.ACTIVE
    assert row.updated_at == first_updated


def test_new_subscription_supersedes_the_current_one(db):
    add_subscription(db, "user-1", plan_id="explorer", stripe_subscription_id="sub_old")

    process_webhook_event(db, event("evt_4", "customer.subscription.created", subscription_object(
        sub_id="sub_new", price_id="price_strategist_monthly",
    )))

    assert reload(db, UserSubscription, stripe_subscription_id="sub_old").status == SubscriptionStatus.CANCELED
    current = get_current_subscription(db, "user-1")
    assert current.stripe_subscription_id == "sub_new"
    assert current.plan_id == "strategist"


def test_deleted_subscription_falls_back_to_free(db):
    add_subscription(db, "user-1", stripe_subscription_id="sub_1")

    process_webhook_event(db, event("evt_5", "customer.subscription.deleted", subscription_object(
        status="canceled", canceled_at=T0,
    )))

    row = reload(db, UserSubscription, stripe_subscription_id="sub_1")
    assert row.status == SubscriptionStatus.CANCELED
    assert row.canceled_at == datetime(2025, 8, 15, 12, 0)
    assert get_current_subscription(db, "user-1") is None


def test_invoice_paid_records_history_and_recovers_past_due(db):
    add_subscription(db, "user-1", stripe_subscription_id="sub_1", status=SubscriptionStatus.PAST_DUE)

    process_webhook_event(db, event("evt_6", "invoice.paid", invoice_object()))
    # invoice.payment_succeeded for the same invoice updates the same row
    process_webhook_event(db, event("evt_7", "invoice.payment_succeeded", invoice_object()))

    history = db.query(BillingHistory).filter_by(stripe_invoice_id="in_1").all()
    assert len(history) == 1
    assert history[0].status == "paid"
    assert history[0].amount_cents == 2900
    assert history[0].paid_at == datetime(2025, 8, 15, 12, 0)
    assert reload(db, UserSubscription, stripe_subscription_id="sub_1").status == SubscriptionStatus.ACTIVE


def test_payment_failed_marks_past_due_and_emails(db):
    add_subscription(db, "user-1", stripe_subscription_id="sub_1")
    # Newer API versions carry the subscription under parent.subscription_details
    invoice = invoice_object(
        subscription=None,
        parent={"subscription_details": {"subscription": "sub_1"}},
        amount_paid=0,
    )

    with patch("quivercore.webhooks.email_service") as email_service, \
            patch("quivercore.webhooks.fire_and_forget") as fire_and_forget:
        process_webhook_event(db, event("evt_8", "invoice.payment_failed", invoice))

    history = reload(db, BillingHistory, stripe_invoice_id="in_1")
    assert history.status == "failed"
    assert history.amount_cents == 2900
    assert reload(db, UserSubscription, stripe_subscription_id="sub_1").status == SubscriptionStatus.PAST_DUE
    email_service.send_payment_failed.assert_called_once_with(
        "user@example.com", "29.00", "https://invoice.stripe.com/in_1"
    )
    fire_and_forget.assert_called_once()


def test_trial_will_end_sends_reminder(db):
    add_subscription(db, "user-1", stripe_subscription_id="sub_1", status=SubscriptionStatus.TRIALING)

    with patch("quivercore.webhooks.stripe_service") as stripe_service, \
            patch("quivercore.webhooks.email_service") as email_service, \
            patch("quivercore.webhooks.fire_and_forget"):
        stripe_service.get_customer_email.return_value = "user@example.com"
        process_webhook_event(db, event("evt_9", "customer.subscription.trial_will_end", subscription_object(
            status="trialing", trial_end=to_unix(datetime(2025, 9, 15)),
        )))

    email_service.send_trial_ending.assert_called_once_with("user@example.com", "Explorer", "September 15, 2025")


def test_overage_payment_intent_succeeded_credits_the_ledger(db):
    db.add(MonthlyUsageTracking(user_id="user-1", month_year="2025-08", overage_prompts=4, overage_charges_cents=300))
    db.add(OveragePayment(
        user_id="user-1", month_year="2025-08", prompt_count=4, amount_cents=300,
        stripe_payment_intent_id="pi_1", status=PaymentStatus.PENDING,
    ))
    db.commit()

    process_webhook_event(db, event("evt_10", "payment_intent.succeeded", {
        "id": "pi_1", "object": "payment_intent", "amount": 300, "currency": "usd",
        "status": "succeeded", "metadata": {"type": "overage", "user_id": "user-1", "month_year": "2025-08"},
    }))

    assert reload(db, OveragePayment, stripe_payment_intent_id="pi_1").status == PaymentStatus.SUCCEEDED
    assert reload(db, MonthlyUsageTracking, user_id="user-1").prepaid_charges_cents == 300


def test_unknown_event_types_are_acknowledged(db):
    result = process_webhook_event(db, event("evt_11", "customer.created", {"id": "cus_1"}))

    assert result == {"received": True}
    assert db.query(WebhookEvent).filter_by(stripe_event_id="evt_11").count() == 1


def test_malformed_events_are_rejected(db):
    with pytest.raises(ValidationError):
        process_webhook_event(db, {"id": "evt_12", "type": "invoice.paid"})

    bad_subscription = subscription_object()
    del bad_subscription["status"]
    with pytest.raises(ValidationError) as exc:
        process_webhook_event(db, event("evt_13", "customer.subscription.updated", bad_subscription))

    assert exc.value.code == "INVALID_PAYLOAD"
    assert db.query(WebhookEvent).count() == 0


def test_processing_failure_rolls_back_so_stripe_retries(db):
    # No local record ties this invoice to a user
    with pytest.raises(InternalError) as exc:
        process_webhook_event(db, event("evt_14", "invoice.paid", invoice_object(user_id="stranger", sub_id="sub_unknown")))

    assert exc.value.code == "WEBHOOK_PROCESSING_FAILED"
    assert exc.value.status_code == 500
    assert db.query(WebhookEvent).count() == 0
    assert db.query(BillingHistory).count() == 0


def test_payment_failed_email_waits_for_the_commit(db):
    add_subscription(db, "user-1", stripe_subscription_id="sub_1")
    scheduled = []

    with patch("quivercore.webhooks.email_service") as email_service, \
            patch.object(db, "commit", side_effect=OperationalError("COMMIT", {}, Exception("database is locked"))):
        with pytest.raises(InternalError):
            process_webhook_event(db, event("evt_15", "invoice.payment_failed", invoice_object()), scheduled.append)

    assert scheduled == []
    email_service.send_payment_failed.assert_not_called()


def test_notices_are_handed_to_the_scheduler_after_processing(db):
    add_subscription(db, "user-1", stripe_subscription_id="sub_1")
    scheduled = []

    with patch("quivercore.webhooks.email_service") as email_service:
        process_webhook_event(db, event("evt_16", "invoice.payment_failed", invoice_object()), scheduled.append)
        email_service.send_payment_failed.assert_not_called()
        assert len(scheduled) == 1
        scheduled[0]()

    assert db.query(WebhookEvent).filter_by(stripe_event_id="evt_16").count() == 1
    email_service.send_payment_failed.assert_called_once_with(
        "user@example.com", "29.00", "https://invoice.stripe.com/in_1"
    )
