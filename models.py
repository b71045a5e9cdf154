from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, Text, JSON, ForeignKey,
    Index, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base, relationship

# Create Base here to avoid circular imports
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def cents_to_dollars(cents: int) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(Decimal("0.01"))


class SubscriptionStatus:
    """Subscription statuses mirrored from Stripe"""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"

    CURRENT = (ACTIVE, TRIALING)


class BillingPeriod:
    MONTHLY = "monthly"
    ANNUAL = "annual"


class MetricType:
    """Usage metrics counted per billing period"""
    PROMPT_EXECUTION = "prompt_execution"
    PROMPT_CREATED = "prompt_created"
    API_CALL = "api_call"

    ALL = (PROMPT_EXECUTION, PROMPT_CREATED, API_CALL)


class InvoiceStatus:
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOID = "void"


class PaymentStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


_CURRENT_STATUS_SQL = text("status IN ('active', 'trialing')")


class UserSubscription(Base):
    """
    Local mirror of a Stripe subscription.

    Rows are never deleted; a canceled subscription keeps its history with
    status ``canceled``. At most one row per user may be active or trialing.
    """
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Supabase auth user id (uuid string)
    user_id = Column(String(36), nullable=False, index=True)

    plan_id = Column(String(20), nullable=False, default="free")
    status = Column(String(20), nullable=False, default=SubscriptionStatus.INCOMPLETE, index=True)
    billing_period = Column(String(10), nullable=False, default=BillingPeriod.MONTHLY)

    # Stripe references
    stripe_customer_id = Column(String(64), nullable=True, index=True)
    stripe_subscription_id = Column(String(64), nullable=True, unique=True)
    stripe_price_id = Column(String(64), nullable=True)

    # Billing cycle
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    billing_anchor_day = Column(Integer, nullable=True)  # day-of-month the annual cycle is pinned to
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    # Timestamp of the newest Stripe event applied to this row
    last_event_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    billing_history = relationship("BillingHistory", back_populates="subscription")

    __table_args__ = (
        Index(
            "uq_user_subscriptions_current_user",
            "user_id",
            unique=True,
            postgresql_where=_CURRENT_STATUS_SQL,
            sqlite_where=_CURRENT_STATUS_SQL,
        ),
    )

    @property
    def is_current(self) -> bool:
        return self.status in SubscriptionStatus.CURRENT

    @property
    def is_annual(self) -> bool:
        return self.billing_period == BillingPeriod.ANNUAL

    def to_dict(self) -> dict:
        """Convert subscription to dictionary"""
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "status": self.status,
            "billing_period": self.billing_period,
            "stripe_subscription_id": self.stripe_subscription_id,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
        }

    def __repr__(self) -> str:
        return f"<UserSubscription(id={self.id}, user_id={self.user_id}, plan={self.plan_id}, status={self.status})>"


class UsageRecord(Base):
    """Per-user, per-metric counter for one billing period"""
    __tablename__ = "usage_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    metric_type = Column(String(32), nullable=False)
    count = Column(Integer, nullable=False, default=0)

    # period_end is exclusive: the start of the next period
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    usage_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "metric_type", "period_start", name="uq_usage_tracking_user_metric_period"),
    )

    def __repr__(self) -> str:
        return f"<UsageRecord(user_id={self.user_id}, metric={self.metric_type}, count={self.count}, period_start={self.period_start})>"


class MonthlyUsageTracking(Base):
    """
    Overage ledger, one row per user per calendar month.

    Amounts are integer cents. Once ``billed`` is set the row is never
    changed again.
    """
    __tablename__ = "monthly_usage_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    month_year = Column(String(7), nullable=False)  # "YYYY-MM"
    plan_tier = Column(String(20), nullable=True)

    prompts_used = Column(Integer, nullable=False, default=0)
    overage_prompts = Column(Integer, nullable=False, default=0)
    overage_charges_cents = Column(Integer, nullable=False, default=0)

    # Already collected through one-time overage payments
    prepaid_charges_cents = Column(Integer, nullable=False, default=0)

    billed = Column(Boolean, nullable=False, default=False, index=True)
    billed_at = Column(DateTime, nullable=True)
    stripe_invoice_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "month_year", name="uq_monthly_usage_user_month"),
    )

    @property
    def overage_charges(self) -> Decimal:
        return cents_to_dollars(self.overage_charges_cents)

    @property
    def outstanding_cents(self) -> int:
        return max(0, (self.overage_charges_cents or 0) - (self.prepaid_charges_cents or 0))

    def to_dict(self) -> dict:
        """Convert ledger row to dictionary"""
        return {
            "month_year": self.month_year,
            "plan_tier": self.plan_tier,
            "prompts_used": self.prompts_used,
            "overage_prompts": self.overage_prompts,
            "overage_charges": str(self.overage_charges),
            "prepaid_charges": str(cents_to_dollars(self.prepaid_charges_cents)),
            "billed": self.billed,
            "billed_at": self.billed_at.isoformat() if self.billed_at else None,
            "stripe_invoice_id": self.stripe_invoice_id,
        }

    def __repr__(self) -> str:
        return (
            f"<MonthlyUsageTracking(user_id={self.user_id}, month={self.month_year}, "
            f"overage={self.overage_prompts}, charges={self.overage_charges_cents}c, billed={self.billed})>"
        )


class BillingHistory(Base):
    """Append-only invoice history; only ``status`` changes after insert"""
    __tablename__ = "billing_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=True)

    stripe_invoice_id = Column(String(64), nullable=True, unique=True)
    stripe_payment_intent_id = Column(String(64), nullable=True)

    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default=InvoiceStatus.PENDING, index=True)
    invoice_url = Column(String(512), nullable=True)
    description = Column(String(255), nullable=True)

    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    subscription = relationship("UserSubscription", back_populates="billing_history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripe_invoice_id": self.stripe_invoice_id,
            "amount": str(cents_to_dollars(self.amount_cents)),
            "currency": self.currency,
            "status": self.status,
            "invoice_url": self.invoice_url,
            "description": self.description,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OveragePayment(Base):
    """One-time PaymentIntent raised when a user pays for overage immediately"""
    __tablename__ = "overage_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    month_year = Column(String(7), nullable=False)
    prompt_count = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False)

    stripe_payment_intent_id = Column(String(64), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WebhookEvent(Base):
    """Stripe events that have already been applied"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stripe_event_id = Column(String(64), nullable=False, unique=True)
    event_type = Column(String(64), nullable=False)
    processed_at = Column(DateTime, default=utcnow, nullable=False)


class Prompt(Base):
    """Saved prompt; non-archived prompts count against the storage limit"""
    __tablename__ = "prompts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)
    archived = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "archived": self.archived,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
