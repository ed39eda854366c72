"""Stripe webhook endpoint tests.

Exercises POST /webhooks/stripe with REAL Stripe signatures, proving:
1. Missing or invalid signatures are rejected with 400 before any handler runs.
2. Valid events are dispatched and acknowledged with {"received": true}.
3. Duplicate deliveries are acknowledged without a second state change.
4. Handler failures answer 500 so Stripe retries.

No live Postgres required - the DB layer is replaced at the `txn` /
repository boundary by an in-memory store.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from lectio.api.factory import create_app

from .helpers import event_payload, future_epoch, provider_subscription, sign_payload

SUBSCRIPTION_ID = "sub_webhook_1"


@pytest.fixture
def client(store, webhook_env) -> TestClient:
    return TestClient(create_app())


def _post(client: TestClient, payload: bytes, signature: str | None):
    headers = {"Stripe-Signature": signature} if signature is not None else {}
    return client.post("/webhooks/stripe", content=payload, headers=headers)


def _seed_subscription(store, *, status: str = "active") -> None:
    sub = provider_subscription(SUBSCRIPTION_ID, status=status)
    store.subscriptions[SUBSCRIPTION_ID] = {
        "stripe_subscription_id": SUBSCRIPTION_ID,
        "user_id": "user-1",
        "tier": "friend",
        "amount": sub.amount,
        "status": status,
        "current_period_start": sub.current_period_start,
        "current_period_end": sub.current_period_end,
        "cancel_at_period_end": False,
        "last_event_at": None,
    }


def _updated_subscription_object(status: str = "active") -> dict:
    return {
        "id": SUBSCRIPTION_ID,
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": True,
        "current_period_start": future_epoch(0),
        "current_period_end": future_epoch(30 * 86400),
    }


class TestSignatureVerification:
    def test_missing_signature_returns_400(self, client, store):
        payload = event_payload("customer.subscription.updated", _updated_subscription_object())

        response = _post(client, payload, None)

        assert response.status_code == 400
        assert response.json() == {"error": "No signature"}
        assert store.writes == []

    def test_invalid_signature_returns_400(self, client, store):
        payload = event_payload("customer.subscription.updated", _updated_subscription_object())

        response = _post(client, payload, "t=123,v1=deadbeef")

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid signature"}
        assert store.writes == []

    def test_tampered_body_rejected_before_any_handler(self, client, store):
        _seed_subscription(store)
        payload = event_payload("customer.subscription.updated", _updated_subscription_object())
        signature = sign_payload(payload)
        tampered = payload.replace(b'"active"', b'"canceled"')

        with patch("lectio.api.routes.webhooks_stripe.dispatch_event") as dispatch:
            response = _post(client, tampered, signature)

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid signature"}
        dispatch.assert_not_called()
        assert store.writes == []
        assert store.subscriptions[SUBSCRIPTION_ID]["status"] == "active"

    def test_signature_with_wrong_secret_returns_400(self, client, store):
        payload = event_payload("invoice.paid", {"id": "in_1"})

        response = _post(client, payload, sign_payload(payload, secret="whsec_other"))

        assert response.status_code == 400
        assert store.writes == []

    def test_missing_webhook_secret_returns_500(self, client, store, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
        payload = event_payload("invoice.paid", {"id": "in_1"})

        response = _post(client, payload, sign_payload(payload))

        assert response.status_code == 500
        assert store.writes == []


class TestDispatch:
    def test_valid_event_updates_state_and_acknowledges(self, client, store):
        _seed_subscription(store)
        payload = event_payload(
            "customer.subscription.updated",
            _updated_subscription_object(status="past_due"),
            event_id="evt_update_1",
        )

        response = _post(client, payload, sign_payload(payload))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        row = store.subscriptions[SUBSCRIPTION_ID]
        assert row["status"] == "past_due"
        assert row["cancel_at_period_end"] is True
        assert store.events == {"evt_update_1": "customer.subscription.updated"}

    def test_duplicate_delivery_acknowledged_once(self, client, store):
        _seed_subscription(store)
        payload = event_payload(
            "customer.subscription.updated",
            _updated_subscription_object(),
            event_id="evt_dup_1",
        )

        first = _post(client, payload, sign_payload(payload))
        writes_after_first = list(store.writes)
        second = _post(client, payload, sign_payload(payload))

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json() == {"received": True}
        assert store.writes == writes_after_first

    def test_unhandled_event_type_acknowledged_without_writes(self, client, store):
        payload = event_payload("charge.refunded", {"id": "ch_1"})

        response = _post(client, payload, sign_payload(payload))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert store.writes == []

    def test_subscription_checkout_without_tier_is_noop(self, client, store, webhook_env):
        webhook_env.subscriptions[SUBSCRIPTION_ID] = provider_subscription(SUBSCRIPTION_ID)
        session = {
            "id": "cs_sub_1",
            "object": "checkout.session",
            "mode": "subscription",
            "subscription": SUBSCRIPTION_ID,
            "metadata": {"user_id": "user-1"},
        }
        payload = event_payload("checkout.session.completed", session)

        response = _post(client, payload, sign_payload(payload))

        assert response.status_code == 200
        assert store.writes == []
        assert webhook_env.retrieved == []

    def test_provider_failure_returns_500(self, client, store, webhook_env):
        # invoice.paid re-fetches a subscription the fake client does not know
        _seed_subscription(store)
        payload = event_payload(
            "invoice.paid",
            {"id": "in_1", "subscription": SUBSCRIPTION_ID, "billing_reason": "subscription_cycle"},
            event_id="evt_fail_1",
        )

        response = _post(client, payload, sign_payload(payload))

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook handler failed"}
        assert store.events == {}

    def test_store_failure_returns_500(self, client, store):
        _seed_subscription(store)
        store.fail_on.add("update_subscription_period")
        payload = event_payload(
            "customer.subscription.updated",
            _updated_subscription_object(),
        )

        response = _post(client, payload, sign_payload(payload))

        assert response.status_code == 500
        assert store.events == {}

    def test_response_carries_correlation_id(self, client):
        payload = event_payload("charge.refunded", {"id": "ch_1"})

        response = client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload), "X-Correlation-ID": "cid-42"},
        )

        assert response.headers["X-Correlation-ID"] == "cid-42"
