"""
HTTP routes for QuiverCore Billing API
"""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from database import get_db, health_check as db_health_check
from models import Prompt, MetricType

from .analytics import get_revenue_summary
from .auth import CurrentUser, get_admin_user, get_current_user, verify_cron_request
from .config import PlanConfig, get_environment_info, require_stripe_config
from .errors import NotFound, UsageLimitExceeded
from .models import (
    PromptCreate, OveragePaymentRequest, CheckoutRequest, CheckoutResponse,
    PortalRequest, CancelRequest, PlanChangeRequest
)
from .overage import accrue_usage_overage, bill_monthly_overages, create_overage_payment
from .services import stripe_service
from .subscriptions import (
    cancel_user_subscription, change_plan, get_effective_subscription,
    open_billing_portal, preview_plan_change, start_checkout
)
from .usage_checker import check_usage_limit, get_usage_summary
from .usage_tracking import (
    get_billing_period, get_current_subscription, record_usage,
    reset_annual_anniversaries, reset_monthly_usage
)
from .webhooks import process_webhook_event

logger = logging.getLogger(__name__)

# Create routers for different endpoint groups
usage_router = APIRouter(prefix="/api/usage", tags=["Usage"])
prompt_router = APIRouter(prefix="/api/prompts", tags=["Prompts"])
subscription_router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])
cron_router = APIRouter(prefix="/api/cron", tags=["Scheduled Jobs"], dependencies=[Depends(verify_cron_request)])
admin_router = APIRouter(prefix="/api/admin", tags=["Administration"])
health_router = APIRouter(prefix="/api", tags=["Health"])


# Usage endpoints
@usage_router.get("/summary")
async def usage_summary(current_user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    """Plan, period and quota usage for the dashboard"""
    return get_usage_summary(db, current_user.id)


# Prompt endpoints
@prompt_router.post("", status_code=201)
async def create_prompt(
    prompt_data: PromptCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Save a prompt.

    Storage is a hard limit on every plan. The monthly prompt limit blocks
    free users; paid users continue and accrue overage at their plan rate.
    """
    storage = check_usage_limit(db, current_user.id, "storage")
    if not storage["allowed"]:
        raise UsageLimitExceeded("Storage limit reached; archive prompts or upgrade your plan", "storage", storage)

    prompts = check_usage_limit(db, current_user.id, "prompts")
    if not prompts["allowed"] and prompts["upgrade_required"]:
        raise UsageLimitExceeded("Monthly prompt limit reached; upgrade to keep creating prompts", "prompts", prompts)

    prompt = Prompt(user_id=current_user.id, title=prompt_data.title, content=prompt_data.content)
    db.add(prompt)
    db.commit()

    record_usage(db, current_user.id, MetricType.PROMPT_CREATED, metadata={"prompt_id": prompt.id})

    overage = None
    if not prompts["allowed"]:
        subscription = get_current_subscription(db, current_user.id)
        period_start, _ = get_billing_period(db, current_user.id, subscription=subscription)
        overage = accrue_usage_overage(
            db,
            current_user.id,
            prompts["plan_tier"],
            prompts["current"] + 1 - prompts["limit"],
            period_start=period_start,
        )
        overage["charge_amount"] = str(overage["charge_amount"])

    logger.info(f"User {current_user.id} created prompt {prompt.id}")
    return {"prompt": prompt.to_dict(), "usage": check_usage_limit(db, current_user.id, "prompts"), "overage": overage}


@prompt_router.get("")
async def list_prompts(
    include_archived: bool = False,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Prompt).filter(Prompt.user_id == current_user.id)
    if not include_archived:
        query = query.filter(Prompt.archived.is_(False))
    return {"prompts": [prompt.to_dict() for prompt in query.order_by(Prompt.created_at.desc(), Prompt.id.desc()).all()]}


def _get_owned_prompt(db: Session, user_id: str, prompt_id: int) -> Prompt:
    prompt = db.query(Prompt).filter(Prompt.id == prompt_id, Prompt.user_id == user_id).first()
    if prompt is None:
        raise NotFound("Prompt not found", code="PROMPT_NOT_FOUND")
    return prompt


@prompt_router.post("/overage")
def pay_overage(
    request: OveragePaymentRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Accrue extra prompts now and return a PaymentIntent to pay for them immediately"""
    result = create_overage_payment(db, current_user.id, request.prompt_count)
    result["charge_amount"] = str(result["charge_amount"])
    return result


@prompt_router.post("/{prompt_id}/archive")
async def archive_prompt(
    prompt_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Archive a prompt, freeing a storage slot"""
    prompt = _get_owned_prompt(db, current_user.id, prompt_id)
    prompt.archived = True
    db.commit()
    return {"prompt": prompt.to_dict()}


@prompt_router.post("/{prompt_id}/use")
async def use_prompt(
    prompt_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    prompt = _get_owned_prompt(db, current_user.id, prompt_id)
    recorded = record_usage(db, current_user.id, MetricType.PROMPT_EXECUTION, metadata={"prompt_id": prompt.id})
    return {"prompt_id": prompt.id, "recorded": recorded}


# Subscription endpoints
@subscription_router.get("/current")
async def current_subscription(current_user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return get_effective_subscription(db, current_user.id)


@subscription_router.get("/plans")
async def list_plans():
    return {"plans": PlanConfig.list_plans()}


@subscription_router.post("/create-checkout", response_model=CheckoutResponse)
def create_checkout(
    request: CheckoutRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a Stripe Checkout Session for a paid plan"""
    require_stripe_config()
    return start_checkout(db, current_user, request.price_id, request.success_url, request.cancel_url)


@subscription_router.post("/create-portal")
def create_portal(
    request: PortalRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_stripe_config()
    return {"url": open_billing_portal(db, current_user.id, request.return_url)}


@subscription_router.post("/cancel")
def cancel_subscription(
    request: CancelRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_stripe_config()
    return cancel_user_subscription(db, current_user.id, request.subscription_id, request.immediate)


@subscription_router.post("/upgrade")
def upgrade_subscription(
    request: PlanChangeRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_stripe_config()
    return change_plan(db, current_user.id, request.new_price_id)


@subscription_router.post("/preview-change")
def preview_change(
    request: PlanChangeRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Proration preview for moving to another price"""
    require_stripe_config()
    return preview_plan_change(db, current_user.id, request.new_price_id)


@subscription_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """Handle Stripe webhook events; notices are sent once the response is out"""
    payload = await request.body()
    event = stripe_service.verify_webhook_signature(payload, stripe_signature)
    return await run_in_threadpool(process_webhook_event, db, event, background_tasks.add_task)


# Scheduled job endpoints
@cron_router.api_route("/reset-usage", methods=["GET", "POST"])
def cron_reset_usage(db: Session = Depends(get_db)):
    return reset_monthly_usage(db)


@cron_router.api_route("/reset-anniversaries", methods=["GET", "POST"])
def cron_reset_anniversaries(db: Session = Depends(get_db)):
    return reset_annual_anniversaries(db)


@cron_router.api_route("/bill-overages", methods=["GET", "POST"])
def cron_bill_overages(db: Session = Depends(get_db)):
    require_stripe_config()
    result = bill_monthly_overages(db)
    return result


# Admin endpoints
@admin_router.get("/revenue")
async def revenue(current_user: CurrentUser = Depends(get_admin_user), db: Session = Depends(get_db)):
    logger.info(f"Revenue summary requested by {current_user.email}")
    return get_revenue_summary(db)


# Health
@health_router.get("/health")
async def health():
    database = await db_health_check()
    status = "healthy" if database.get("database") == "healthy" else "degraded"
    return {"status": status, **database, **get_environment_info()}
