from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from models import (
    BillingHistory, MetricType, MonthlyUsageTracking, OveragePayment,
    PaymentStatus, SubscriptionStatus
)
from quivercore.errors import DatabaseError, ExternalApiError, NotFound, ValidationError
from quivercore.overage import (
    accrue_usage_overage, bill_monthly_overages, create_overage_payment,
    record_overage_charge, settle_overage_payment
)
from quivercore.usage_tracking import get_period_usage, record_usage

from conftest import add_subscription

AUGUST_DAY = datetime(2025, 8, 20, 14, 0)
BILLING_RUN = datetime(2025, 9, 1, 1, 0)


def ledger(db, user_id, month="2025-08"):
    row = db.query(MonthlyUsageTracking).filter_by(user_id=user_id, month_year=month).one()
    db.refresh(row)
    return row


def fake_invoice(invoice_id):
    invoice = MagicMock()
    invoice.id = invoice_id
    invoice.hosted_invoice_url = f"https://invoice.stripe.com/{invoice_id}"
    return invoice


def create_prompts_past_limit(db, user_id, count, now=AUGUST_DAY, limit=50):
    """Mirror the prompt-creation flow: count the prompt, then accrue anything past the limit"""
    for _ in range(count):
        before = get_period_usage(db, user_id, MetricType.PROMPT_CREATED, datetime(now.year, now.month, 1))
        record_usage(db, user_id, MetricType.PROMPT_CREATED, now=now)
        if before + 1 > limit:
            accrue_usage_overage(db, user_id, "explorer", before + 1 - limit, now=now)


def test_record_overage_charge_adds_to_the_month(db):
    first = record_overage_charge(db, "user-1", "explorer", 4, now=AUGUST_DAY)
    second = record_overage_charge(db, "user-1", "explorer", 2, now=AUGUST_DAY)

    assert first == {"success": True, "charge_amount": Decimal("3.00")}
    assert second["charge_amount"] == Decimal("1.50")
    row = ledger(db, "user-1")
    assert row.overage_prompts == 6
    assert row.overage_charges_cents == 450


def test_record_overage_charge_rejects_free_plan_and_bad_counts(db):
    with pytest.raises(ValidationError) as exc:
        record_overage_charge(db, "user-1", "free", 3)
    assert exc.value.code == "OVERAGE_NOT_AVAILABLE"

    with pytest.raises(ValidationError):
        record_overage_charge(db, "user-1", "explorer", 0)


def test_record_overage_charge_refuses_a_billed_month(db):
    db.add(MonthlyUsageTracking(user_id="user-1", month_year="2025-08", billed=True, overage_prompts=1, overage_charges_cents=75))
    db.commit()

    result = record_overage_charge(db, "user-1", "explorer", 2, now=AUGUST_DAY)

    assert result["success"] is False
    assert ledger(db, "user-1").overage_charges_cents == 75


def test_accrual_only_charges_the_shortfall(db):
    assert accrue_usage_overage(db, "user-2", "explorer", 3, now=AUGUST_DAY)["charged_units"] == 3
    # Same target again charges nothing
    assert accrue_usage_overage(db, "user-2", "explorer", 3, now=AUGUST_DAY)["charged_units"] == 0
    result = accrue_usage_overage(db, "user-2", "explorer", 5, now=AUGUST_DAY)

    assert result["charged_units"] == 2
    assert result["charge_amount"] == Decimal("1.50")
    row = ledger(db, "user-2")
    assert row.overage_prompts == 5
    assert row.overage_charges_cents == 375


def test_annual_accrual_deducts_earlier_months_of_the_period(db):
    period_start = datetime(2025, 6, 10)
    db.add(MonthlyUsageTracking(user_id="user-annual", month_year="2025-07", overage_prompts=4, overage_charges_cents=300))
    db.commit()

    result = accrue_usage_overage(
        db, "user-annual", "explorer", 6, now=AUGUST_DAY, period_start=period_start
    )

    assert result["charged_units"] == 2
    assert ledger(db, "user-annual").overage_prompts == 2


def test_explorer_overage_is_billed_once_on_the_first(db):
    add_subscription(db, "user-3", plan_id="explorer")
    create_prompts_past_limit(db, "user-3", 55)

    row = ledger(db, "user-3")
    assert row.prompts_used == 55
    assert row.overage_prompts == 5
    assert row.overage_charges == Decimal("3.75")

    with patch("quivercore.overage.stripe_service") as stripe_service:
        stripe_service.create_overage_invoice.return_value = fake_invoice("in_aug")
        result = bill_monthly_overages(db, now=BILLING_RUN)
        rerun = bill_monthly_overages(db, now=BILLING_RUN)

    assert result == {
        "success": True,
        "month_year": "2025-08",
        "users_billed": 1,
        "total_amount": "3.75",
        "errors": [],
    }
    assert rerun["users_billed"] == 0
    stripe_service.create_overage_invoice.assert_called_once_with("cus_user-3", "user-3", "2025-08", 5, 375)

    row = ledger(db, "user-3")
    assert row.billed is True
    assert row.stripe_invoice_id == "in_aug"
    history = db.query(BillingHistory).filter_by(user_id="user-3").one()
    assert history.amount_cents == 375
    assert history.stripe_invoice_id == "in_aug"


def test_billing_failures_are_isolated_per_user(db):
    add_subscription(db, "user-ok")
    add_subscription(db, "user-stripe-down")
    for user_id in ("user-ok", "user-no-customer", "user-stripe-down"):
        db.add(MonthlyUsageTracking(
            user_id=user_id, month_year="2025-08", plan_tier="explorer",
            overage_prompts=2, overage_charges_cents=150,
        ))
    db.commit()

    def create_invoice(customer_id, user_id, month, prompts, amount):
        if user_id == "user-stripe-down":
            raise ExternalApiError("Payment provider error during overage invoice creation")
        return fake_invoice(f"in_{user_id}")

    with patch("quivercore.overage.stripe_service") as stripe_service:
        stripe_service.create_overage_invoice.side_effect = create_invoice
        result = bill_monthly_overages(db, now=BILLING_RUN)

    assert result["users_billed"] == 1
    assert result["total_amount"] == "1.50"
    assert {error["user_id"] for error in result["errors"]} == {"user-no-customer", "user-stripe-down"}
    assert ledger(db, "user-ok").billed is True
    assert ledger(db, "user-stripe-down").billed is False
    assert ledger(db, "user-no-customer").billed is False


def test_prepaid_overage_is_not_invoiced_again(db):
    add_subscription(db, "user-4")
    db.add(MonthlyUsageTracking(
        user_id="user-4", month_year="2025-08", plan_tier="explorer",
        overage_prompts=4, overage_charges_cents=300, prepaid_charges_cents=300,
    ))
    db.commit()

    with patch("quivercore.overage.stripe_service") as stripe_service:
        result = bill_monthly_overages(db, now=BILLING_RUN)

    stripe_service.create_overage_invoice.assert_not_called()
    assert result["users_billed"] == 1
    assert result["total_amount"] == "0.00"
    assert ledger(db, "user-4").billed is True


def test_pay_now_records_charge_then_creates_payment_intent(db):
    add_subscription(db, "user-5", plan_id="researcher")
    intent = MagicMock()
    intent.id = "pi_123"
    intent.client_secret = "pi_123_secret"

    with patch("quivercore.overage.stripe_service") as stripe_service:
        stripe_service.create_overage_payment_intent.return_value = intent
        result = create_overage_payment(db, "user-5", 10, now=AUGUST_DAY)

    stripe_service.create_overage_payment_intent.assert_called_once_with("cus_user-5", "user-5", "2025-08", 10, 750)
    assert result["charge_amount"] == Decimal("7.50")
    assert result["client_secret"] == "pi_123_secret"
    payment = db.query(OveragePayment).filter_by(stripe_payment_intent_id="pi_123").one()
    assert payment.status == PaymentStatus.PENDING
    assert ledger(db, "user-5").overage_charges_cents == 750

    assert settle_overage_payment(db, "pi_123", succeeded=True) is True
    db.commit()
    # Replayed webhook is a no-op
    assert settle_overage_payment(db, "pi_123", succeeded=True) is False
    db.commit()

    assert ledger(db, "user-5").prepaid_charges_cents == 750
    assert ledger(db, "user-5").outstanding_cents == 0


def test_pay_now_without_ledger_write_creates_no_payment_intent(db):
    add_subscription(db, "user-6")
    with patch("quivercore.overage.record_overage_charge", return_value={"success": False, "charge_amount": Decimal("0.00")}), \
            patch("quivercore.overage.stripe_service") as stripe_service:
        with pytest.raises(DatabaseError):
            create_overage_payment(db, "user-6", 3, now=AUGUST_DAY)

    stripe_service.create_overage_payment_intent.assert_not_called()


def test_pay_now_requires_subscription_and_customer(db):
    with pytest.raises(ValidationError) as exc:
        create_overage_payment(db, "user-none", 3)
    assert exc.value.code == "NO_SUBSCRIPTION"

    add_subscription(db, "user-7", stripe_customer_id=None, status=SubscriptionStatus.TRIALING)
    with pytest.raises(NotFound):
        create_overage_payment(db, "user-7", 3)
