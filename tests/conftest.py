import hashlib
import hmac
import time
from datetime import datetime

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import get_db
from models import Base, UserSubscription, SubscriptionStatus
from quivercore.config import config
from quivercore.main import app

JWT_SECRET = "test-supabase-jwt-secret"
CRON_SECRET = "test-cron-secret"
ADMIN_EMAIL = "admin@quivercore.app"

PRICE_IDS = {
    ("explorer", "monthly"): "price_explorer_monthly",
    ("explorer", "annual"): "price_explorer_annual",
    ("researcher", "monthly"): "price_researcher_monthly",
    ("researcher", "annual"): "price_researcher_annual",
    ("strategist", "monthly"): "price_strategist_monthly",
    ("strategist", "annual"): "price_strategist_annual",
}


@pytest.fixture(autouse=True)
def billing_config(monkeypatch):
    """Known keys and price ids for every test; no real Stripe or email traffic"""
    monkeypatch.setattr(config, "ENVIRONMENT", "test")
    monkeypatch.setattr(config, "SUPABASE_JWT_SECRET", JWT_SECRET)
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
    monkeypatch.setattr(config, "CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(config, "ADMIN_EMAILS", [ADMIN_EMAIL])
    monkeypatch.setattr(config, "STRIPE_RETRY_BASE_DELAY", 0.0)
    monkeypatch.setattr(config, "JOB_BATCH_SIZE", 2)
    for (tier, billing_period), price_id in PRICE_IDS.items():
        monkeypatch.setattr(config, f"STRIPE_PRICE_ID_{tier.upper()}_{billing_period.upper()}", price_id)
    yield


@pytest.fixture
def session_factory(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest_asyncio.fixture
async def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_db, None)


def make_token(user_id: str, email: str = "user@example.com") -> str:
    return jwt.encode(
        {"sub": user_id, "email": email, "role": "authenticated", "aud": "authenticated"},
        JWT_SECRET,
        algorithm="HS256",
    )


def auth_headers(user_id: str, email: str = "user@example.com") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, email)}"}


def add_subscription(
    db,
    user_id: str,
    plan_id: str = "explorer",
    billing_period: str = "monthly",
    status: str = SubscriptionStatus.ACTIVE,
    **values,
) -> UserSubscription:
    values.setdefault("stripe_customer_id", f"cus_{user_id}")
    values.setdefault("stripe_subscription_id", f"sub_{user_id}_{plan_id}")
    values.setdefault("created_at", datetime(2025, 1, 1))
    subscription = UserSubscription(
        user_id=user_id,
        plan_id=plan_id,
        billing_period=billing_period,
        status=status,
        **values,
    )
    db.add(subscription)
    db.commit()
    return subscription


def sign(payload: str, secret: str = "whsec_test_dummy", timestamp: int = None) -> str:
    """Stripe-Signature header for ``payload``"""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"
