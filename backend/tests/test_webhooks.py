"""
Integration Tests for Webhooks (Stripe)

Verifies:
- Signature verification failure (400)
- Successful event processing
- Idempotency (prevent double processing)
- Lookup failures (422 for payments, accepted skip for subscription events)
- Duplicate live subscriptions
"""

import json

from sqlalchemy import func, select

from app.infrastructure.db.models.audit import SubscriptionAuditEntry
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.models.webhook_event import StripeWebhookEvent
from app.infrastructure.db.repositories.audit_repository import AuditRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.webhook_event_repository import WebhookEventRepository


WEBHOOK_URL = "/api/webhooks/stripe"


def _invoice(subscription_id: str = "sub_1", customer: str = "cus_1") -> dict:
    return {
        "id": "in_1",
        "object": "invoice",
        "customer": customer,
        "subscription": subscription_id,
    }


async def _rows(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _post(client, sign_payload, body: str):
    return await client.post(
        WEBHOOK_URL,
        content=body,
        headers={"stripe-signature": sign_payload(body), "content-type": "application/json"},
    )


async def _subscription(session_factory, subscription_id: str):
    async with session_factory() as session:
        return await SubscriptionRepository(session).get_by_stripe_subscription_id(subscription_id)


async def _audit(session_factory, subscription_id: str):
    async with session_factory() as session:
        return await AuditRepository(session).list_for_subscription(subscription_id)


class TestSignature:

    async def test_webhook_missing_signature(self, async_client):
        """Webhook without signature header should fail 400."""
        response = await async_client.post(WEBHOOK_URL, json={"id": "evt_123"})
        assert response.status_code == 400
        assert "Missing Stripe signature" in response.json()["detail"]

    async def test_webhook_invalid_signature(self, async_client, sign_payload, make_event):
        """Webhook signed with another secret should fail 400."""
        _, body = make_event("evt_123", "invoice.payment_succeeded", _invoice())

        response = await async_client.post(
            WEBHOOK_URL,
            content=body,
            headers={"stripe-signature": sign_payload(body, secret="whsec_other")},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "SignatureVerificationError"

    async def test_webhook_tampered_body(self, async_client, sign_payload, make_event):
        """The signature covers the exact bytes; any change is rejected."""
        _, body = make_event("evt_123", "invoice.payment_succeeded", _invoice())
        header = sign_payload(body)

        response = await async_client.post(
            WEBHOOK_URL,
            content=body.replace("in_1", "in_2"),
            headers={"stripe-signature": header},
        )
        assert response.status_code == 400

    async def test_webhook_non_utf8_body(self, async_client):
        """Bytes that are not UTF-8 are rejected as unverifiable, not a server error."""
        response = await async_client.post(
            WEBHOOK_URL,
            content=b"\xff\xfe{}",
            headers={"stripe-signature": "t=1,v1=abc"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "SignatureVerificationError"

    async def test_webhook_malformed_payload(self, async_client, sign_payload):
        """A correctly signed body that is not an event is rejected."""
        body = json.dumps({"id": "evt_no_type"})
        response = await _post(async_client, sign_payload, body)
        assert response.status_code == 400
        assert response.json()["error"] == "WebhookPayloadError"


class TestPaymentSucceeded:

    async def test_creates_subscription(
        self, async_client, session_factory, basic_plan, stripe_store,
        make_stripe_subscription, make_event, sign_payload,
    ):
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription()
        _, body = make_event("evt_1", "invoice.payment_succeeded", _invoice())

        response = await _post(async_client, sign_payload, body)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "processed", "event_id": "evt_1"}

        row = await _subscription(session_factory, "sub_1")
        assert row.user_id == "u1"
        assert row.plan_id == "basic"
        assert row.status == "active"
        assert row.current_period_end is not None

        entries = await _audit(session_factory, "sub_1")
        assert [(e.action, e.source, e.event_id) for e in entries] == [("created", "webhook", "evt_1")]

    async def test_replay_is_idempotent(
        self, async_client, session_factory, basic_plan, stripe_store,
        make_stripe_subscription, make_event, sign_payload,
    ):
        """Duplicate event should return 'already_processed' and change nothing."""
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription()
        _, body = make_event("evt_1", "invoice.payment_succeeded", _invoice())

        first = await _post(async_client, sign_payload, body)
        second = await _post(async_client, sign_payload, body)

        assert first.json()["status"] == "processed"
        assert second.status_code == 200
        assert second.json()["status"] == "already_processed"

        async with session_factory() as session:
            assert await _rows(session, UserSubscription) == 1
            assert await _rows(session, SubscriptionAuditEntry) == 1
            assert await _rows(session, StripeWebhookEvent) == 1

    async def test_unknown_price_returns_422_and_is_not_claimed(
        self, async_client, session_factory, basic_plan, stripe_store,
        make_stripe_subscription, make_event, sign_payload,
    ):
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription(price="price_unknown")
        _, body = make_event("evt_1", "invoice.payment_succeeded", _invoice())

        response = await _post(async_client, sign_payload, body)

        assert response.status_code == 422
        assert response.json()["details"]["kind"] == "plan"
        assert await _subscription(session_factory, "sub_1") is None

        entries = await _audit(session_factory, "sub_1")
        assert len(entries) == 1
        assert entries[0].action == "error"
        assert entries[0].reason == "plan_not_found"

        async with session_factory() as session:
            assert await WebhookEventRepository(session).get_by_id("evt_1") is None

    async def test_retry_after_plan_is_added_succeeds(
        self, async_client, session_factory, basic_plan, stripe_store,
        make_stripe_subscription, make_event, sign_payload, user_directory,
    ):
        """An unclaimed failure is applied on Stripe's next delivery."""
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription()
        _, body = make_event("evt_1", "invoice.payment_succeeded", _invoice())

        user_directory.users.clear()
        assert (await _post(async_client, sign_payload, body)).status_code == 422

        user_directory.users["a@b.com"] = "u1"
        response = await _post(async_client, sign_payload, body)
        assert response.json()["status"] == "processed"
        assert (await _subscription(session_factory, "sub_1")).user_id == "u1"

    async def test_customer_without_email_returns_422(
        self, async_client, basic_plan, stripe_store,
        make_stripe_subscription, make_event, sign_payload,
    ):
        stripe_store["customers"]["cus_2"] = {"id": "cus_2", "object": "customer", "email": None}
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription(customer="cus_2")
        _, body = make_event("evt_1", "invoice.payment_succeeded", _invoice(customer="cus_2"))

        response = await _post(async_client, sign_payload, body)

        assert response.status_code == 422
        assert response.json()["details"]["kind"] == "customer_email"

    async def test_duplicate_live_subscription_is_flagged(
        self, async_client, session_factory, basic_plan, stripe_store, stripe_client,
        make_stripe_subscription, make_event, sign_payload, subscribe,
    ):
        await subscribe(subscription_id="sub_1")
        stripe_store["subscriptions"]["sub_2"] = make_stripe_subscription(subscription_id="sub_2")
        _, body = make_event("evt_2", "invoice.payment_succeeded", _invoice(subscription_id="sub_2"))

        response = await _post(async_client, sign_payload, body)

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
        stripe_client.subscriptions.update.assert_called_once()
        args, kwargs = stripe_client.subscriptions.update.call_args
        assert args[0] == "sub_2"
        assert kwargs["params"]["cancel_at_period_end"] is True

        assert await _subscription(session_factory, "sub_2") is None
        entries = await _audit(session_factory, "sub_2")
        assert [(e.action, e.reason) for e in entries] == [("skipped", "duplicate_subscription")]

    async def test_invoice_without_subscription_is_ignored(
        self, async_client, make_event, sign_payload,
    ):
        _, body = make_event("evt_1", "invoice.payment_succeeded", _invoice(subscription_id=None))
        response = await _post(async_client, sign_payload, body)
        assert response.json()["status"] == "ignored"


class TestSubscriptionEvents:

    async def test_update_conforms_existing_row(
        self, async_client, session_factory, basic_plan,
        make_stripe_subscription, make_event, sign_payload, subscribe,
    ):
        await subscribe()
        _, body = make_event(
            "evt_upd", "customer.subscription.updated",
            make_stripe_subscription(status="past_due"),
        )

        response = await _post(async_client, sign_payload, body)

        assert response.json()["status"] == "processed"
        row = await _subscription(session_factory, "sub_1")
        assert row.status == "past_due"
        assert row.user_id == "u1"

        entries = await _audit(session_factory, "sub_1")
        assert entries[-1].action == "updated"
        assert entries[-1].status_db == "active"
        assert entries[-1].status_stripe == "past_due"

    async def test_reactivation_next_to_newer_live_subscription_is_skipped(
        self, async_client, session_factory, basic_plan, stripe_store, stripe_client,
        make_stripe_subscription, make_event, sign_payload, subscribe,
    ):
        """A past_due row turning active while the user holds a newer live one is not applied."""
        await subscribe(subscription_id="sub_old", status="past_due")
        await subscribe(subscription_id="sub_new")
        reactivated = make_stripe_subscription(subscription_id="sub_old")
        stripe_store["subscriptions"]["sub_old"] = reactivated
        _, body = make_event("evt_react", "customer.subscription.updated", reactivated)

        response = await _post(async_client, sign_payload, body)

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
        assert stripe_client.subscriptions.update.call_args.args[0] == "sub_old"
        assert (await _subscription(session_factory, "sub_old")).status == "past_due"
        assert (await _subscription(session_factory, "sub_new")).status == "active"
        entries = await _audit(session_factory, "sub_old")
        assert [(e.action, e.reason) for e in entries] == [("skipped", "duplicate_subscription")]

        replay = await _post(async_client, sign_payload, body)
        assert replay.status_code == 200
        assert replay.json()["status"] == "already_processed"

    async def test_deleted_marks_canceled(
        self, async_client, session_factory, basic_plan,
        make_stripe_subscription, make_event, sign_payload, subscribe,
    ):
        await subscribe()
        _, body = make_event(
            "evt_del", "customer.subscription.deleted",
            make_stripe_subscription(status="canceled", canceled_at=1700000000),
        )

        await _post(async_client, sign_payload, body)

        row = await _subscription(session_factory, "sub_1")
        assert row.status == "canceled"
        assert row.canceled_at is not None

    async def test_created_for_known_user_inserts_row(
        self, async_client, session_factory, basic_plan,
        make_stripe_subscription, make_event, sign_payload,
    ):
        _, body = make_event(
            "evt_new", "customer.subscription.created",
            make_stripe_subscription(status="trialing"),
        )

        response = await _post(async_client, sign_payload, body)

        assert response.json()["status"] == "processed"
        assert (await _subscription(session_factory, "sub_1")).status == "trialing"

    async def test_unknown_user_is_skipped_and_acknowledged(
        self, async_client, session_factory, basic_plan, user_directory,
        make_stripe_subscription, make_event, sign_payload,
    ):
        user_directory.users.clear()
        _, body = make_event(
            "evt_orphan", "customer.subscription.updated", make_stripe_subscription(),
        )

        first = await _post(async_client, sign_payload, body)
        second = await _post(async_client, sign_payload, body)

        assert first.status_code == 200
        assert first.json()["status"] == "skipped"
        assert second.json()["status"] == "already_processed"
        assert await _subscription(session_factory, "sub_1") is None

        entries = await _audit(session_factory, "sub_1")
        assert [(e.action, e.reason) for e in entries] == [("skipped", "user_not_found")]

    async def test_unknown_status_is_rejected(
        self, async_client, basic_plan, make_stripe_subscription, make_event, sign_payload,
    ):
        _, body = make_event(
            "evt_weird", "customer.subscription.updated",
            make_stripe_subscription(status="frozen"),
        )
        response = await _post(async_client, sign_payload, body)
        assert response.status_code == 400
        assert response.json()["error"] == "UnknownProviderStatusError"


class TestOtherEvents:

    async def test_unhandled_type_is_ignored_once(self, async_client, make_event, sign_payload):
        _, body = make_event("evt_misc", "customer.created", {"id": "cus_9", "object": "customer"})

        first = await _post(async_client, sign_payload, body)
        second = await _post(async_client, sign_payload, body)

        assert first.json()["status"] == "ignored"
        assert second.json()["status"] == "already_processed"

    async def test_payment_failed_resyncs_from_stripe(
        self, async_client, session_factory, basic_plan, stripe_store,
        make_stripe_subscription, make_event, sign_payload, subscribe,
    ):
        await subscribe()
        stripe_store["subscriptions"]["sub_1"] = make_stripe_subscription(status="past_due")
        _, body = make_event("evt_fail", "invoice.payment_failed", _invoice())

        response = await _post(async_client, sign_payload, body)

        assert response.json()["status"] == "processed"
        assert (await _subscription(session_factory, "sub_1")).status == "past_due"
