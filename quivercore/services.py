"""
Stripe integration for QuiverCore billing.

Every SDK call goes through ``StripeService._call`` which retries rate
limits, 5xx responses and connection errors with exponential backoff and
converts everything else into ``ExternalApiError`` straight away.
"""
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import stripe

from models import utcnow

from .billing_calendar import first_of_next_month, to_unix
from .config import config, require_stripe_config, require_webhook_secret
from .errors import ExternalApiError, ValidationError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def is_retryable(error: Exception) -> bool:
    """Rate limits, Stripe-side 5xx and network failures are worth retrying"""
    if isinstance(error, stripe.APIConnectionError):
        return True
    if isinstance(error, stripe.StripeError):
        return getattr(error, "http_status", None) in RETRYABLE_STATUS_CODES
    return False


class StripeService:
    """Service for Stripe payment operations with plan management"""

    def __init__(self):
        stripe.api_key = config.STRIPE_SECRET_KEY
        self.currency = config.STRIPE_CURRENCY

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run ``fn``, retrying transient failures; creates pass an ``idempotency_key`` reused on every attempt"""
        require_stripe_config()
        stripe.api_key = config.STRIPE_SECRET_KEY

        max_retries = config.STRIPE_MAX_RETRIES
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except stripe.StripeError as e:
                if not is_retryable(e) or attempt >= max_retries:
                    logger.error(f"Stripe {operation} failed: {type(e).__name__}: {e.user_message or str(e)}")
                    raise ExternalApiError(
                        f"Payment provider error during {operation}",
                        details={"provider_error": e.user_message or str(e)},
                    ) from e

                delay = min(config.STRIPE_RETRY_BASE_DELAY * (2 ** attempt), config.STRIPE_RETRY_MAX_DELAY)
                attempt += 1
                logger.warning(
                    f"Stripe {operation} retry {attempt}/{max_retries} after "
                    f"{type(e).__name__} (status {getattr(e, 'http_status', None)}), waiting {delay:.1f}s"
                )
                time.sleep(delay)

    # ============ CUSTOMERS ============

    def get_or_create_customer(self, user_id: str, email: Optional[str], existing_customer_id: Optional[str] = None) -> str:
        """Reuse the stored Stripe customer or create one tagged with the Supabase user id"""
        if existing_customer_id:
            return existing_customer_id

        customer = self._call(
            "customer creation",
            stripe.Customer.create,
            email=email,
            metadata={"supabase_user_id": user_id},
            idempotency_key=f"customer-{user_id}",
        )
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer.id

    def get_customer_email(self, customer_id: str) -> Optional[str]:
        customer = self._call("customer retrieve", stripe.Customer.retrieve, customer_id)
        return customer["email"] if "email" in customer else None

    # ============ SUBSCRIPTIONS ============

    def create_checkout_session(
        self,
        customer_id: str,
        user_id: str,
        price_id: str,
        plan_id: str,
        billing_period: str,
        success_url: str,
        cancel_url: str,
        now: Optional[datetime] = None,
    ):
        """
        Create a subscription Checkout Session.

        Monthly plans are anchored to the 1st of next month and Stripe
        prorates the partial first month; annual plans bill on the
        anniversary of signup.
        """
        metadata = {
            "supabase_user_id": user_id,
            "plan_id": plan_id,
            "billing_period": billing_period,
        }
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if billing_period == "monthly":
            subscription_data["billing_cycle_anchor"] = to_unix(first_of_next_month(now or utcnow()))
            subscription_data["proration_behavior"] = "create_prorations"

        session = self._call(
            "checkout session creation",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            client_reference_id=user_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            allow_promotion_codes=True,
            metadata=metadata,
            subscription_data=subscription_data,
            idempotency_key=f"checkout-{user_id}-{uuid.uuid4().hex}",
        )
        logger.info(f"Created {plan_id} ({billing_period}) checkout session for user {user_id}")
        return session

    def create_billing_portal_session(self, customer_id: str, return_url: str):
        return self._call(
            "billing portal session creation",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )

    def cancel_subscription(self, subscription_id: str, immediate: bool = False):
        """Cancel now, or flag the subscription to end with the current period"""
        if immediate:
            subscription = self._call("subscription cancel", stripe.Subscription.cancel, subscription_id)
        else:
            subscription = self._call(
                "subscription cancel",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        logger.info(f"Canceled subscription {subscription_id} ({'immediately' if immediate else 'at period end'})")
        return subscription

    def update_subscription_plan(self, subscription_id: str, new_price_id: str):
        """Swap the subscription's price, letting Stripe prorate the change"""
        subscription = self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id)
        item_id = subscription["items"]["data"][0]["id"]
        updated = self._call(
            "subscription update",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior="create_prorations",
        )
        logger.info(f"Moved subscription {subscription_id} to price {new_price_id}")
        return updated

    def preview_plan_change(self, customer_id: str, subscription_id: str, new_price_id: str):
        """Upcoming invoice for a plan change, including proration lines"""
        subscription = self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id)
        item_id = subscription["items"]["data"][0]["id"]
        return self._call(
            "invoice preview",
            stripe.Invoice.create_preview,
            customer=customer_id,
            subscription=subscription_id,
            subscription_details={
                "items": [{"id": item_id, "price": new_price_id}],
                "proration_behavior": "create_prorations",
            },
        )

    # ============ OVERAGE ============

    def create_overage_payment_intent(
        self, customer_id: str, user_id: str, month: str, prompt_count: int, amount_cents: int
    ):
        """One-time PaymentIntent for overage the user chooses to pay immediately"""
        intent = self._call(
            "overage payment intent creation",
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=self.currency,
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            description=f"QuiverCore overage: {prompt_count} prompts ({month})",
            metadata={
                "type": "overage",
                "user_id": user_id,
                "month_year": month,
                "prompt_count": str(prompt_count),
            },
            idempotency_key=f"overage-payment-{user_id}-{month}-{uuid.uuid4().hex}",
        )
        logger.info(f"Created overage payment intent {intent.id} for user {user_id}: {amount_cents}c")
        return intent

    def create_overage_invoice(
        self, customer_id: str, user_id: str, month: str, overage_prompts: int, amount_cents: int
    ):
        """
        Invoice a month's outstanding overage and finalize it for automatic collection.

        Idempotency keys are derived from user and month, so a retried job
        run never creates a second invoice for the same ledger row.
        """
        key = f"overage-{user_id}-{month}"
        metadata = {
            "user_id": user_id,
            "month_year": month,
            "overage_prompts": str(overage_prompts),
            "charge_type": "monthly_overage",
        }

        self._call(
            "overage invoice item creation",
            stripe.InvoiceItem.create,
            customer=customer_id,
            amount=amount_cents,
            currency=self.currency,
            description=f"Overage charges for {month}: {overage_prompts} prompts",
            metadata=metadata,
            idempotency_key=f"{key}-item",
        )
        invoice = self._call(
            "overage invoice creation",
            stripe.Invoice.create,
            customer=customer_id,
            collection_method="charge_automatically",
            auto_advance=True,
            pending_invoice_items_behavior="include",
            description=f"QuiverCore overage for {month}",
            metadata=metadata,
            idempotency_key=f"{key}-invoice",
        )
        finalized = self._call(
            "overage invoice finalization",
            stripe.Invoice.finalize_invoice,
            invoice.id,
            idempotency_key=f"{key}-finalize",
        )
        logger.info(f"Finalized overage invoice {finalized.id} for user {user_id} ({month}): {amount_cents}c")
        return finalized

    # ============ WEBHOOKS ============

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe-Signature header and return the decoded event body"""
        require_webhook_secret()
        if not signature:
            logger.error("Stripe webhook received without signature header")
            raise ValidationError("Missing Stripe-Signature header", code="INVALID_SIGNATURE")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, config.STRIPE_WEBHOOK_SECRET, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except UnicodeDecodeError:
            logger.error("Invalid payload encoding in Stripe webhook")
            raise ValidationError("Invalid payload", code="INVALID_PAYLOAD")
        except stripe.SignatureVerificationError:
            logger.error("Invalid signature in Stripe webhook")
            raise ValidationError("Invalid signature", code="INVALID_SIGNATURE")

        try:
            return json.loads(body)
        except ValueError:
            logger.error("Invalid JSON in Stripe webhook")
            raise ValidationError("Invalid payload", code="INVALID_PAYLOAD")


# Module-level singleton
stripe_service = StripeService()
