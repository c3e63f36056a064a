"""
Integration tests for the caller-facing subscription endpoints and the
retention cleanup job.
"""

from datetime import timedelta

import pytest
import stripe

from app.domain.subscription import utcnow
from app.infrastructure.db.database import unit_of_work
from app.infrastructure.db.models import StripeWebhookEvent, SubscriptionAuditEntry
from app.infrastructure.db.repositories.audit_repository import AuditRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.services.maintenance_service import MaintenanceService


class TestSubscriptionStatus:

    async def test_new_user_is_trial_eligible(self, async_client):
        response = await async_client.get("/api/subscription/status")

        assert response.status_code == 200
        body = response.json()
        assert body["subscription_status"] is None
        assert body["trial_eligible"] is True
        assert body["remaining_interactions"] == 0

    async def test_subscriber_status(self, async_client, basic_plan, subscribe):
        await subscribe()

        body = (await async_client.get("/api/subscription/status")).json()

        assert body["subscription_status"] == "active"
        assert body["plan_type"] == "basic"
        assert body["daily_limit"] == 50
        assert body["remaining_interactions"] == 50
        assert body["trial_eligible"] is False

    async def test_canceled_user_is_not_trial_eligible(self, async_client, basic_plan, subscribe):
        await subscribe(status="canceled")

        body = (await async_client.get("/api/subscription/status")).json()

        assert body["subscription_status"] == "canceled"
        assert body["trial_eligible"] is False


class TestCancel:

    async def test_without_live_subscription_is_409(self, async_client, stripe_client):
        response = await async_client.post("/api/subscription/cancel")

        assert response.status_code == 409
        stripe_client.subscriptions.cancel.assert_not_called()

    async def test_cancels_on_stripe_and_locally(
        self, async_client, session_factory, basic_plan, subscribe,
        stripe_store, stripe_client, make_stripe_subscription,
    ):
        await subscribe()
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription()

        response = await async_client.post("/api/subscription/cancel")

        assert response.status_code == 200
        assert response.json()["subscription_status"] == "canceled"
        stripe_client.subscriptions.cancel.assert_called_once()
        assert stripe_client.subscriptions.cancel.call_args.args[0] == "sub_1"

        async with session_factory() as session:
            row = await SubscriptionRepository(session).get_by_stripe_subscription_id("sub_1")
            entries = await AuditRepository(session).list_for_subscription("sub_1")
        assert row.status == "canceled"
        assert row.canceled_at is not None
        assert [(e.source, e.reason) for e in entries] == [("cancel", "user_requested")]

    async def test_stripe_failure_leaves_row_untouched(
        self, async_client, session_factory, basic_plan, subscribe, stripe_client,
    ):
        await subscribe()
        stripe_client.subscriptions.cancel.side_effect = stripe.APIConnectionError("Network down")

        response = await async_client.post("/api/subscription/cancel")

        assert response.status_code == 502
        async with session_factory() as session:
            row = await SubscriptionRepository(session).get_by_stripe_subscription_id("sub_1")
        assert row.status == "active"


@pytest.fixture
async def aged_records(session_factory):
    """Two records older than the retention window and two fresh ones."""
    old = utcnow() - timedelta(days=120)
    async with unit_of_work(session_factory, "seed_retention") as session:
        session.add_all([
            StripeWebhookEvent(event_id="evt_old", event_type="invoice.payment_succeeded", processed_at=old),
            StripeWebhookEvent(event_id="evt_new", event_type="invoice.payment_succeeded"),
            SubscriptionAuditEntry(action="created", source="webhook", stripe_subscription_id="sub_1",
                                   created_at=old),
            SubscriptionAuditEntry(action="updated", source="reconcile", stripe_subscription_id="sub_1"),
        ])


class TestCheckout:

    async def _checkout(self, client, price_id: str = "price_basic"):
        return await client.post("/api/subscription/checkout", json={"price_id": price_id})

    async def test_new_customer_gets_a_trial(self, async_client, basic_plan, stripe_client):
        response = await self._checkout(async_client)

        assert response.status_code == 200
        body = response.json()
        assert body["session_id"] == "cs_test_1"
        assert body["checkout_url"].startswith("https://checkout.stripe.com/")
        assert body["trial_days"] == 7
        params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
        assert params["customer"] == "cus_1"
        assert params["line_items"] == [{"price": "price_basic", "quantity": 1}]
        assert params["subscription_data"]["trial_period_days"] == 7
        assert params["client_reference_id"] == "u1"

    async def test_returning_customer_gets_no_trial(
        self, async_client, basic_plan, subscribe, stripe_client,
    ):
        await subscribe(status="canceled")

        response = await self._checkout(async_client)

        assert response.status_code == 200
        assert response.json()["trial_days"] is None
        params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
        assert "trial_period_days" not in params["subscription_data"]

    async def test_live_subscription_in_ledger_is_409(
        self, async_client, basic_plan, subscribe, stripe_client,
    ):
        await subscribe(status="trialing")

        response = await self._checkout(async_client)

        assert response.status_code == 409
        stripe_client.checkout.sessions.create.assert_not_called()

    async def test_live_subscription_only_on_stripe_is_409(
        self, async_client, basic_plan, stripe_store, make_stripe_subscription, stripe_client,
    ):
        # Paid, but the webhook has not reached the ledger yet
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription()

        response = await self._checkout(async_client)

        assert response.status_code == 409
        assert response.json()["error"] == "ConflictError"
        stripe_client.checkout.sessions.create.assert_not_called()

    async def test_canceled_stripe_subscription_does_not_block(
        self, async_client, basic_plan, stripe_store, make_stripe_subscription,
    ):
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription(status="canceled")

        response = await self._checkout(async_client)

        assert response.status_code == 200

    async def test_creates_the_stripe_customer_on_first_checkout(
        self, async_client, basic_plan, stripe_store, stripe_client,
    ):
        stripe_store["customers"].clear()

        response = await self._checkout(async_client)

        assert response.status_code == 200
        stripe_client.customers.create.assert_called_once_with(
            params={"email": "a@b.com", "metadata": {"user_id": "u1"}}
        )
        params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
        assert params["customer"] == "cus_new0"

    async def test_unknown_price_is_404(self, async_client, basic_plan, stripe_client):
        response = await self._checkout(async_client, price_id="price_gone")

        assert response.status_code == 404
        stripe_client.customers.list.assert_not_called()

    async def test_missing_price_is_422(self, async_client):
        response = await async_client.post("/api/subscription/checkout", json={})
        assert response.status_code == 422

    async def test_stripe_outage_is_502(self, async_client, basic_plan, stripe_client):
        stripe_client.checkout.sessions.create.side_effect = stripe.APIConnectionError("Network down")

        response = await self._checkout(async_client)

        assert response.status_code == 502


class TestBillingPortal:

    async def test_without_live_subscription_is_409(self, async_client, stripe_client):
        response = await async_client.post("/api/subscription/billing-portal")

        assert response.status_code == 409
        stripe_client.billing_portal.sessions.create.assert_not_called()

    async def test_returns_portal_url(self, async_client, basic_plan, subscribe, stripe_client):
        await subscribe()

        response = await async_client.post("/api/subscription/billing-portal")

        assert response.status_code == 200
        assert response.json()["url"].startswith("https://billing.stripe.com/")
        params = stripe_client.billing_portal.sessions.create.call_args.kwargs["params"]
        assert params["customer"] == "cus_1"
        assert params["return_url"].endswith("/plans-manage")


class TestCleanup:

    async def test_removes_only_expired_records(self, session_factory, test_settings, aged_records):
        summary = await MaintenanceService(session_factory, settings=test_settings).cleanup()

        assert summary.webhook_events_deleted == 1
        assert summary.audit_entries_deleted == 1

        async with session_factory() as session:
            assert await session.get(StripeWebhookEvent, "evt_new") is not None
            assert await session.get(StripeWebhookEvent, "evt_old") is None
            entries = await AuditRepository(session).list_for_subscription("sub_1")
        assert [e.action for e in entries] == ["updated"]

    async def test_cron_endpoint(self, async_client, cron_headers, aged_records):
        response = await async_client.get("/api/cron/cleanup", headers=cron_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["webhook_events_deleted"] == 1
        assert body["audit_entries_deleted"] == 1

        second = await async_client.get("/api/cron/cleanup", headers=cron_headers)
        assert second.json()["webhook_events_deleted"] == 0
