"""
Test configuration and fixtures for NutriChat Billing.

Provides shared fixtures for unit and integration tests:
- an in-memory SQLite ledger (aiosqlite, schema from SQLModel metadata)
- a fake Stripe backend (StripeService over a MagicMock client)
- fake user directory and assistant
- the FastAPI app with its leaf dependencies overridden
"""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

# Settings are read at import time; give them test values first.
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-0123456789abcdef0123")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from app.config.settings import Settings
from app.domain.subscription import ProviderSubscription, utcnow
from app.infrastructure.db import models as db_models
from app.infrastructure.db.database import create_session_factory, unit_of_work
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.payments.stripe_service import StripeService
from app.infrastructure.services.subscription_sync import SubscriptionSync


TEST_USER_ID = "u1"
TEST_EMAIL = "a@b.com"
TEST_CUSTOMER_ID = "cus_1"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def basic_plan(session_factory):
    """'basic' plan: 50 interactions per day, priced by price_basic."""
    async with unit_of_work(session_factory, "seed_basic_plan") as session:
        session.add(db_models.SubscriptionPlan(
            id="basic",
            name="Basic",
            stripe_price_id="price_basic",
            stripe_product_id="prod_basic",
            daily_interactions_limit=50,
            price_cents=1990,
            currency="brl",
            interval="month",
            features=["50 interactions per day"],
        ))
        await session.flush()
        session.add(db_models.SubscriptionPlanPrice(
            plan_id="basic",
            stripe_price_id="price_basic",
            amount_cents=1990,
            currency="brl",
            billing_interval="month",
            is_current=True,
        ))
    return "basic"


@pytest.fixture
async def premium_plan(session_factory):
    """'premium' plan: unlimited, priced by price_premium."""
    async with unit_of_work(session_factory, "seed_premium_plan") as session:
        session.add(db_models.SubscriptionPlan(
            id="premium",
            name="Premium",
            stripe_price_id="price_premium",
            stripe_product_id="prod_premium",
            daily_interactions_limit=None,
            price_cents=4990,
            features=["Unlimited interactions"],
        ))
        await session.flush()
        session.add(db_models.SubscriptionPlanPrice(
            plan_id="premium",
            stripe_price_id="price_premium",
            amount_cents=4990,
            is_current=True,
        ))
    return "premium"


# =============================================================================
# Stripe Fixtures
# =============================================================================

@pytest.fixture
def test_settings():
    return Settings()


@pytest.fixture
def period():
    """(start, end) epoch seconds of a billing period around now."""
    start = int((utcnow() - timedelta(days=1)).timestamp())
    end = int((utcnow() + timedelta(days=29)).timestamp())
    return start, end


@pytest.fixture
def make_stripe_subscription(period):
    """Build a Stripe subscription JSON object (billing period on the item)."""

    def _make(
        subscription_id: str = "sub_1",
        customer: str = TEST_CUSTOMER_ID,
        status: str = "active",
        price: str = "price_basic",
        period_start: int = None,
        period_end: int = None,
        **extra,
    ) -> dict:
        start = period_start if period_start is not None else period[0]
        end = period_end if period_end is not None else period[1]
        obj = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": False,
            "canceled_at": None,
            "cancel_at": None,
            "trial_start": None,
            "trial_end": None,
            "metadata": {},
            "items": {
                "object": "list",
                "data": [{
                    "id": f"si_{subscription_id}",
                    "price": {"id": price, "object": "price"},
                    "current_period_start": start,
                    "current_period_end": end,
                }],
            },
        }
        obj.update(extra)
        return obj

    return _make


@pytest.fixture
def stripe_store():
    """What the fake Stripe account holds."""
    return {
        "subscriptions": {},
        "customers": {
            TEST_CUSTOMER_ID: {"id": TEST_CUSTOMER_ID, "object": "customer", "email": TEST_EMAIL},
        },
    }


@pytest.fixture
def stripe_client(stripe_store):
    """MagicMock standing in for stripe.StripeClient, backed by stripe_store."""
    subscriptions = stripe_store["subscriptions"]
    customers = stripe_store["customers"]
    client = MagicMock()

    client.subscriptions.retrieve.side_effect = lambda sid: subscriptions[sid]

    def _list(params):
        matching = [
            s for s in subscriptions.values()
            if params["status"] in ("all", s["status"])
            and params.get("customer", s["customer"]) == s["customer"]
        ]
        if params.get("starting_after"):
            ids = [s["id"] for s in matching]
            matching = matching[ids.index(params["starting_after"]) + 1:]
        limit = params.get("limit", 10)
        return {"object": "list", "data": matching[:limit], "has_more": len(matching) > limit}

    client.subscriptions.list.side_effect = _list

    def _cancel(sid):
        subscriptions[sid] = {
            **subscriptions[sid],
            "status": "canceled",
            "canceled_at": int(time.time()),
        }
        return subscriptions[sid]

    client.subscriptions.cancel.side_effect = _cancel

    def _update(sid, params):
        subscriptions[sid] = {**subscriptions[sid], **params}
        return subscriptions[sid]

    client.subscriptions.update.side_effect = _update
    client.customers.retrieve.side_effect = lambda cid: customers[cid]

    def _find_customers(params):
        found = [c for c in customers.values() if c.get("email") == params["email"]]
        return {"object": "list", "data": found[:params.get("limit", 10)], "has_more": False}

    client.customers.list.side_effect = _find_customers

    def _create_customer(params):
        cid = f"cus_new{len(customers)}"
        customers[cid] = {"id": cid, "object": "customer", **params}
        return MagicMock(id=cid)

    client.customers.create.side_effect = _create_customer
    client.checkout.sessions.create.return_value = MagicMock(
        id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1"
    )
    client.billing_portal.sessions.create.return_value = MagicMock(
        url="https://billing.stripe.com/p/session/test_1"
    )
    client.prices.create.return_value = MagicMock(id="price_new")
    return client


@pytest.fixture
def stripe_service(stripe_client, test_settings):
    return StripeService(client=stripe_client, settings=test_settings)


@pytest.fixture
def sign_payload(test_settings):
    """Stripe-Signature header for a raw body, signed with the test secret."""

    def _sign(payload: str, secret: str = None, timestamp: int = None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{payload}".encode("utf-8")
        key = (secret or test_settings.stripe_webhook_secret).encode("utf-8")
        signature = hmac.new(key, signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    return _sign


@pytest.fixture
def make_event():
    """Build a Stripe event envelope and its raw JSON body."""

    def _make(event_id: str, event_type: str, obj: dict) -> tuple[dict, str]:
        event = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
        return event, json.dumps(event)

    return _make


# =============================================================================
# Collaborator Fakes
# =============================================================================

class FakeUserDirectory:
    """In-memory email -> user id lookup."""

    def __init__(self, users: dict[str, str]):
        self.users = dict(users)

    async def get_user_id_by_email(self, email: str):
        return self.users.get(email)


@pytest.fixture
def user_directory():
    return FakeUserDirectory({TEST_EMAIL: TEST_USER_ID})


@pytest.fixture
def sync(stripe_service, user_directory):
    return SubscriptionSync(stripe_service, user_directory)


@pytest.fixture
def mock_assistant():
    """Mock for AssistantService."""
    mock = MagicMock()
    mock.reply = AsyncMock(return_value="Try adding legumes to your lunch.")
    return mock


@pytest.fixture
def subscribe(session_factory):
    """Write a ledger row directly (bypassing Stripe)."""

    async def _subscribe(
        user_id: str = TEST_USER_ID,
        plan_id: str = "basic",
        status: str = "active",
        subscription_id: str = "sub_1",
        period_end: datetime = None,
    ):
        now = datetime.now(timezone.utc)
        provider = ProviderSubscription(
            id=subscription_id,
            customer_id=TEST_CUSTOMER_ID,
            status=status,
            price_id=f"price_{plan_id}",
            current_period_start=now - timedelta(days=1),
            current_period_end=period_end or now + timedelta(days=29),
        )
        async with unit_of_work(session_factory, "seed_subscription") as session:
            row, _ = await SubscriptionRepository(session).upsert_from_provider(provider, user_id, plan_id)
        return row

    return _subscribe


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app(session_factory, stripe_service, user_directory, mock_assistant):
    """The FastAPI application wired to the test collaborators."""
    from app.main import app as fastapi_app
    from app.api import dependencies as deps

    fastapi_app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    fastapi_app.dependency_overrides[deps.get_stripe_service] = lambda: stripe_service
    fastapi_app.dependency_overrides[deps.get_user_directory] = lambda: user_directory
    fastapi_app.dependency_overrides[deps.get_assistant_service] = lambda: mock_assistant
    fastapi_app.dependency_overrides[deps.get_current_user] = lambda: deps.CurrentUser(TEST_USER_ID, TEST_EMAIL)
    fastapi_app.dependency_overrides[deps.get_current_user_id] = lambda: TEST_USER_ID
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async test client (same event loop as the database fixtures)."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": os.environ["ADMIN_API_KEY"]}


@pytest.fixture
def cron_headers():
    return {"Authorization": f"Bearer {os.environ['CRON_SECRET']}"}
