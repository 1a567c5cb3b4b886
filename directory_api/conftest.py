# directory_api/conftest.py
import os
import pytest
from sqlalchemy import insert

from directory_api.core.config import settings
from directory_api.core.database import (
    init_engine,
    dispose_engine,
    create_all_tables,
    get_db_session,
    users,
    utc_now,
)
from directory_api.tests.mocks import FakeClock, FakeInitiator

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

TEST_JWT_SECRET = "test-secret-key-for-directory-tests-only"
TEST_ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="function", autouse=True)
def test_settings(monkeypatch):
    """Deterministic secrets and M-Pesa config for every test."""
    monkeypatch.setattr(settings, "JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "JWT_ALGORITHM", "HS256")
    monkeypatch.setattr(settings, "ADMIN_KEY", TEST_ADMIN_KEY)
    monkeypatch.setattr(settings, "MPESA_FALLBACK_PHONE", None)
    monkeypatch.setattr(settings, "MPESA_CONSUMER_KEY", "test-consumer-key")
    monkeypatch.setattr(settings, "MPESA_CONSUMER_SECRET", "test-consumer-secret")
    monkeypatch.setattr(settings, "MPESA_SHORTCODE", "174379")
    monkeypatch.setattr(settings, "MPESA_PASSKEY", "test-passkey")
    monkeypatch.setattr(settings, "MPESA_CALLBACK_URL", "https://example.test/mpesa/callback")
    monkeypatch.setattr(settings, "MPESA_ENVIRONMENT", "sandbox")
    yield settings


@pytest.fixture(scope="function", autouse=True)
def test_db(tmp_path):
    """
    Fresh SQLite database per test with tables created and plans seeded.
    """
    from directory_api.features.plans.service import seed_default_plans

    init_engine(f"sqlite:///{tmp_path}/directory.db")
    create_all_tables()
    seed_default_plans()
    yield
    dispose_engine()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def initiator():
    return FakeInitiator()


@pytest.fixture
def make_user():
    """Insert a user row; approved providers pass is_active=True."""

    def _make(user_id: str = "user_alice", **values):
        row = {
            "user_id": user_id,
            "display_name": values.pop("display_name", user_id.replace("user_", "").title()),
            "role": values.pop("role", "user"),
            "is_active": values.pop("is_active", False),
            "has_active_subscription": values.pop("has_active_subscription", False),
            "created_at": values.pop("created_at", utc_now()),
        }
        row.update(values)
        with get_db_session() as session:
            session.execute(insert(users).values(**row))
        return user_id

    return _make


@pytest.fixture
def plans():
    """Seeded plans keyed by name."""
    from directory_api.features.plans.service import PlanCatalog

    return {plan.name: plan for plan in PlanCatalog().list_active()}


@pytest.fixture
def basic_plan(plans):
    return plans["5-Day Basic"]


@pytest.fixture
def ledger(clock):
    from directory_api.features.subscriptions.ledger import SubscriptionLedger

    return SubscriptionLedger(clock=clock)


@pytest.fixture
def service(ledger, initiator, clock):
    from directory_api.features.entitlements.service import EntitlementProjector
    from directory_api.features.plans.service import PlanCatalog
    from directory_api.features.subscriptions.service import SubscriptionService

    return SubscriptionService(
        ledger=ledger,
        initiator=initiator,
        plans=PlanCatalog(),
        projector=EntitlementProjector(clock=clock),
        clock=clock,
    )


@pytest.fixture
def auth_headers():
    from directory_api.core.auth import issue_token

    def _headers(user_id: str = "user_alice", role: str = "user") -> dict:
        return {"Authorization": f"Bearer {issue_token(user_id, role=role)}"}

    return _headers


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": TEST_ADMIN_KEY}


@pytest.fixture
def client(service):
    """TestClient with the subscription service wired to the fake initiator."""
    from fastapi.testclient import TestClient
    from directory_api.main import app
    from directory_api.api.subscriptions import get_subscription_service

    app.dependency_overrides[get_subscription_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
