"""
Configuration for QuiverCore Billing API
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings

from .errors import InternalError

logger = logging.getLogger(__name__)


class QuiverCoreConfig(BaseSettings):
    """Environment-driven settings for the billing API"""

    # Application Settings
    TITLE: str = "QuiverCore Billing API"
    DESCRIPTION: str = "Usage metering, overage billing and Stripe subscription lifecycle for QuiverCore"
    VERSION: str = "1.4.0"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 2
    RELOAD: bool = False

    # CORS Configuration
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    APP_BASE_URL: str = "http://localhost:3000"

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./quivercore.db"
    AUTO_CREATE_TABLES: bool = False  # Alembic owns the schema outside local development

    # Supabase Auth
    SUPABASE_URL: Optional[str] = None
    SUPABASE_JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = "authenticated"

    # Stripe Configuration
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"

    # Stripe Price IDs (set these in .env for production)
    STRIPE_PRICE_ID_EXPLORER_MONTHLY: str = ""
    STRIPE_PRICE_ID_EXPLORER_ANNUAL: str = ""
    STRIPE_PRICE_ID_RESEARCHER_MONTHLY: str = ""
    STRIPE_PRICE_ID_RESEARCHER_ANNUAL: str = ""
    STRIPE_PRICE_ID_STRATEGIST_MONTHLY: str = ""
    STRIPE_PRICE_ID_STRATEGIST_ANNUAL: str = ""

    # Stripe retry policy
    STRIPE_MAX_RETRIES: int = 3
    STRIPE_RETRY_BASE_DELAY: float = 1.0  # seconds, doubled per attempt
    STRIPE_RETRY_MAX_DELAY: float = 10.0

    # Scheduled jobs
    CRON_SECRET: str = ""
    JOB_BATCH_SIZE: int = 100

    # Email (Resend)
    RESEND_API_KEY: str = ""
    RESEND_API_BASE: str = "https://api.resend.com"
    EMAIL_FROM: str = "QuiverCore <billing@quivercore.app>"
    EMAIL_TIMEOUT_SECONDS: float = 5.0

    # Administration
    ADMIN_EMAILS: List[str] = []

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(lineno)d] %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


@dataclass(frozen=True)
class PlanLimits:
    """Limits and pricing for one plan tier. -1 means unlimited."""
    tier: str
    name: str
    monthly_prompt_limit: int
    storage_limit: int
    overage_rate: Decimal  # dollars per prompt beyond the limit
    monthly_price: Decimal
    annual_price: Decimal

    @property
    def overage_rate_cents(self) -> int:
        return int(self.overage_rate * 100)

    @property
    def is_paid(self) -> bool:
        return self.monthly_price > 0

    def prompt_limit_for(self, billing_period: str) -> int:
        """Prompt allowance for one usage period of the given billing period"""
        if self.monthly_prompt_limit == -1:
            return -1
        if billing_period == "annual":
            return self.monthly_prompt_limit * 12
        return self.monthly_prompt_limit

    def limit_for(self, feature: str, billing_period: str = "monthly") -> int:
        if feature == "prompts":
            return self.prompt_limit_for(billing_period)
        if feature == "storage":
            return self.storage_limit
        raise ValueError(f"Unknown feature: {feature}")

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "name": self.name,
            "monthly_prompt_limit": self.monthly_prompt_limit,
            "storage_limit": self.storage_limit,
            "overage_rate": str(self.overage_rate),
            "monthly_price": str(self.monthly_price),
            "annual_price": str(self.annual_price),
            "stripe_price_ids": {
                "monthly": PlanConfig.get_price_id(self.tier, "monthly"),
                "annual": PlanConfig.get_price_id(self.tier, "annual"),
            },
        }


class PlanConfig:
    """Static plan registry, loaded at import and never mutated"""

    TIER_ORDER: Tuple[str, ...] = ("free", "explorer", "researcher", "strategist")

    PLANS: Dict[str, PlanLimits] = {
        "free": PlanLimits(
            tier="free",
            name="Free",
            monthly_prompt_limit=10,
            storage_limit=10,
            overage_rate=Decimal("0.00"),
            monthly_price=Decimal("0"),
            annual_price=Decimal("0"),
        ),
        "explorer": PlanLimits(
            tier="explorer",
            name="Explorer",
            monthly_prompt_limit=50,
            storage_limit=100,
            overage_rate=Decimal("0.75"),
            monthly_price=Decimal("29"),
            annual_price=Decimal("279"),
        ),
        "researcher": PlanLimits(
            tier="researcher",
            name="Researcher",
            monthly_prompt_limit=150,
            storage_limit=300,
            overage_rate=Decimal("0.75"),
            monthly_price=Decimal("79"),
            annual_price=Decimal("758"),
        ),
        "strategist": PlanLimits(
            tier="strategist",
            name="Strategist",
            monthly_prompt_limit=500,
            storage_limit=1000,
            overage_rate=Decimal("0.50"),
            monthly_price=Decimal("299"),
            annual_price=Decimal("2870"),
        ),
    }

    # Add-on blocks sold on top of a plan
    ADD_ONS = {
        "prompts": {"price_cents": 1000, "size": 50},
        "storage": {"price_cents": 500, "size": 50},
    }

    @staticmethod
    def get_plan(tier: Optional[str]) -> PlanLimits:
        """Get plan limits, falling back to the free tier for unknown ids"""
        plan = PlanConfig.PLANS.get((tier or "free").lower())
        if plan is None:
            logger.warning(f"Unknown plan tier '{tier}', using free tier limits")
            return PlanConfig.PLANS["free"]
        return plan

    @staticmethod
    def get_price_id(tier: str, billing_period: str) -> str:
        """Stripe price id configured for a tier and billing period"""
        if tier == "free":
            return ""
        return getattr(config, f"STRIPE_PRICE_ID_{tier.upper()}_{billing_period.upper()}", "")

    @staticmethod
    def plan_for_price_id(price_id: Optional[str]) -> Optional[Tuple[str, str]]:
        """Translate a Stripe price id into (tier, billing_period)"""
        if not price_id:
            return None
        for tier in PlanConfig.TIER_ORDER[1:]:
            for billing_period in ("monthly", "annual"):
                if PlanConfig.get_price_id(tier, billing_period) == price_id:
                    return tier, billing_period
        return None

    @staticmethod
    def get_next_tier(tier: str, feature: str) -> Optional[PlanLimits]:
        """Cheapest tier whose limit for ``feature`` is strictly higher, or None at the top"""
        current = PlanConfig.get_plan(tier).limit_for(feature)
        if current == -1:
            return None
        candidates = [
            plan for plan in PlanConfig.PLANS.values()
            if plan.limit_for(feature) == -1 or plan.limit_for(feature) > current
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda plan: plan.monthly_price)

    @staticmethod
    def get_add_on(feature: str) -> dict:
        return PlanConfig.ADD_ONS.get(feature, {})

    @staticmethod
    def list_plans() -> List[dict]:
        return [PlanConfig.PLANS[tier].to_dict() for tier in PlanConfig.TIER_ORDER]


# Create global configuration instance
config = QuiverCoreConfig()


def require_stripe_config() -> None:
    """Fail loudly when a Stripe-backed route runs without keys"""
    if not config.STRIPE_SECRET_KEY:
        raise InternalError(
            "Stripe is not configured: set STRIPE_SECRET_KEY",
            code="STRIPE_NOT_CONFIGURED",
        )


def require_webhook_secret() -> None:
    if not config.STRIPE_WEBHOOK_SECRET:
        raise InternalError(
            "Stripe webhook secret is not configured: set STRIPE_WEBHOOK_SECRET",
            code="STRIPE_NOT_CONFIGURED",
        )


def validate_startup_config() -> List[str]:
    """
    Check required settings on startup.

    Missing keys are logged as warnings in development and raise in
    production, where the API cannot bill without them.
    """
    problems = []

    if not config.SUPABASE_JWT_SECRET:
        problems.append("SUPABASE_JWT_SECRET is required to verify access tokens")
    if not config.STRIPE_SECRET_KEY:
        problems.append("STRIPE_SECRET_KEY is required for billing")
    if not config.STRIPE_WEBHOOK_SECRET:
        problems.append("STRIPE_WEBHOOK_SECRET is required to accept webhooks")
    if not config.CRON_SECRET:
        problems.append("CRON_SECRET is required to protect scheduled job endpoints")
    for tier in PlanConfig.TIER_ORDER[1:]:
        for billing_period in ("monthly", "annual"):
            if not PlanConfig.get_price_id(tier, billing_period):
                problems.append(f"STRIPE_PRICE_ID_{tier.upper()}_{billing_period.upper()} is not set")

    if problems and config.is_production:
        raise ValueError(f"Configuration validation failed: {'; '.join(problems)}")

    for problem in problems:
        logger.warning(f"Configuration: {problem}")
    if not problems:
        logger.info("Configuration validated successfully")
    return problems


def get_environment_info() -> dict:
    """Get current environment information"""
    return {
        "environment": config.ENVIRONMENT,
        "version": config.VERSION,
        "stripe_configured": bool(config.STRIPE_SECRET_KEY),
        "webhooks_configured": bool(config.STRIPE_WEBHOOK_SECRET),
        "email_configured": bool(config.RESEND_API_KEY),
        "cron_protected": bool(config.CRON_SECRET) or config.is_production,
    }


# Export commonly used configurations
__all__ = [
    "config",
    "PlanLimits",
    "PlanConfig",
    "require_stripe_config",
    "require_webhook_secret",
    "validate_startup_config",
    "get_environment_info",
]
