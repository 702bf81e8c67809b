# storytime/conftest.py
import os
import time
from typing import Any, Dict, Optional

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import insert

from storytime.core.config import Settings
from storytime.core.database import create_all_tables, create_db_engine, drop_all_tables, users
from storytime.features.billing.plans import PlanCatalog
from storytime.features.billing.provider import BillingEvent
from storytime.features.billing.store import EntitlementStore
from storytime.models.plan import Plan
from storytime.tests.fakes import JWT_SECRET, WEBHOOK_SECRET, FakeBillingProvider


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    eng = create_db_engine("sqlite://")
    create_all_tables(eng)
    yield eng
    drop_all_tables(eng)
    eng.dispose()


@pytest.fixture
def store(engine):
    return EntitlementStore(engine)


@pytest.fixture
def catalog():
    return PlanCatalog([
        Plan(plan_id="starter", name="Starter StoryTime", price_id="price_starter", monthly_minutes=15, price_monthly=4.99),
        Plan(plan_id="super", name="Super StoryTime", price_id="price_super", monthly_minutes=60, price_monthly=14.99),
        Plan(plan_id="studio", name="Studio StoryTime", price_id="price_studio", monthly_minutes=300, price_monthly=49.99),
    ])


@pytest.fixture
def fake_provider():
    return FakeBillingProvider()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        SUPABASE_JWT_SECRET=JWT_SECRET,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        SITE_URL="https://storytime.test",
        STRIPE_PRICE_STARTER="price_starter",
        STRIPE_PRICE_SUPER="price_super",
        STRIPE_PRICE_STUDIO="price_studio",
    )


@pytest.fixture
def app(test_settings, engine, fake_provider, catalog):
    from storytime.main import create_app
    return create_app(test_settings, engine=engine, provider=fake_provider, catalog=catalog)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def make_user(engine):
    """Insert a users row with the given entitlement columns."""
    def _make(user_id: str, **columns):
        with engine.begin() as conn:
            conn.execute(insert(users).values(id=user_id, **columns))
    return _make


def make_token(user_id: str, email: Optional[str] = None, *, secret: str = JWT_SECRET,
               audience: str = "authenticated", expires_in: int = 3600) -> str:
    payload = {"sub": user_id, "aud": audience, "exp": int(time.time()) + expires_in}
    if email:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def make_jwt():
    return make_token


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, email: Optional[str] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, email)}"}
    return _headers


@pytest.fixture
def make_event():
    def _event(event_type: str, data_object: Dict[str, Any], event_id: str = "evt_test") -> BillingEvent:
        return BillingEvent(event_id=event_id, event_type=event_type, data_object=data_object)
    return _event
