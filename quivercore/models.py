"""
Pydantic models for QuiverCore Billing API
"""
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Prompt models
class PromptCreate(BaseModel):
    """Model for saving a new prompt"""
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=50000)


class OveragePaymentRequest(BaseModel):
    """Pay for overage prompts immediately instead of at month end"""
    prompt_count: int = Field(..., gt=0, le=1000)


# Subscription models
class CheckoutRequest(BaseModel):
    """Model for starting a subscription checkout"""
    price_id: str = Field(..., min_length=1)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str]
    plan_id: str
    billing_period: str
    prorated_amount: Optional[str] = None
    next_billing_date: Optional[date] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class CancelRequest(BaseModel):
    subscription_id: str = Field(..., min_length=1)
    immediate: bool = False


class PlanChangeRequest(BaseModel):
    """Move the current subscription to another price"""
    new_price_id: str = Field(..., min_length=1)


# Stripe webhook payloads
class StripeModel(BaseModel):
    """Stripe objects carry many more fields than we read"""
    model_config = ConfigDict(extra="ignore")


class StripeEventData(StripeModel):
    object: Dict[str, Any]


class StripeEvent(StripeModel):
    """Envelope of a verified Stripe webhook event"""
    id: str
    type: str
    created: int
    livemode: bool = False
    data: StripeEventData


class CheckoutSessionPayload(StripeModel):
    id: str
    mode: Optional[str] = None
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, str] = {}


class PriceRef(StripeModel):
    id: str


class SubscriptionItemPayload(StripeModel):
    id: str
    price: PriceRef
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(StripeModel):
    data: List[SubscriptionItemPayload] = []


class SubscriptionPayload(StripeModel):
    id: str
    customer: Optional[str] = None
    status: str
    metadata: Dict[str, str] = {}
    items: SubscriptionItemList = SubscriptionItemList()
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    billing_cycle_anchor: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    trial_end: Optional[int] = None

    @property
    def price_id(self) -> Optional[str]:
        return self.items.data[0].price.id if self.items.data else None

    @property
    def period_start(self) -> Optional[int]:
        # Newer API versions moved the period onto the subscription items
        if self.current_period_start is not None:
            return self.current_period_start
        return self.items.data[0].current_period_start if self.items.data else None

    @property
    def period_end(self) -> Optional[int]:
        if self.current_period_end is not None:
            return self.current_period_end
        return self.items.data[0].current_period_end if self.items.data else None


class InvoiceSubscriptionDetails(StripeModel):
    subscription: Optional[str] = None


class InvoiceParent(StripeModel):
    subscription_details: Optional[InvoiceSubscriptionDetails] = None


class InvoicePayload(StripeModel):
    id: str
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[InvoiceParent] = None
    payment_intent: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "usd"
    status: Optional[str] = None
    billing_reason: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, str] = {}

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


class PaymentIntentPayload(StripeModel):
    id: str
    amount: int = 0
    currency: str = "usd"
    status: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, str] = {}
