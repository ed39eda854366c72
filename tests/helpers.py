"""Shared test helpers for the billing reconciliation tests.

These are NOT fixtures - they are plain classes and functions that can be
imported by conftest.py and individual test files.
"""

from __future__ import annotations

import copy
import json
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import psycopg2
import stripe

from lectio.notifications.email_sender import EmailResult
from lectio.stripe.client import ProviderSubscription
from lectio.stripe.webhook import StripeEvent

WEBHOOK_SECRET = "whsec_test_secret_1234567890"


def future_epoch(offset: int = 60) -> int:
    """Epoch seconds a little after now."""
    return int(time.time()) + offset


def make_event(
    event_type: str,
    data_object: dict[str, Any],
    *,
    event_id: str | None = None,
    created: int | None = None,
) -> StripeEvent:
    """Build a verified event as the verifier would produce it."""
    return StripeEvent(
        event_id=event_id or f"evt_{uuid.uuid4().hex[:16]}",
        event_type=event_type,
        created=datetime.fromtimestamp(created or future_epoch(), tz=timezone.utc),
        data_object=data_object,
    )


def event_payload(
    event_type: str,
    data_object: dict[str, Any],
    *,
    event_id: str = "evt_test_0001",
    created: int | None = None,
) -> bytes:
    """Raw JSON body of a Stripe event."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created or future_epoch(),
            "livemode": False,
            "data": {"object": data_object},
        }
    ).encode()


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Stripe-Signature header with a real HMAC over the payload."""
    timestamp = str(int(time.time()))
    signature = stripe.WebhookSignature._compute_signature(
        f"{timestamp}.{payload.decode()}", secret
    )
    return f"t={timestamp},v1={signature}"


def provider_subscription(
    subscription_id: str = "sub_test_123",
    *,
    status: str = "active",
    amount: str = "9.99",
    interval: str = "month",
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    cancel_at_period_end: bool = False,
) -> ProviderSubscription:
    start = period_start or datetime(2026, 10, 1, tzinfo=timezone.utc)
    return ProviderSubscription(
        subscription_id=subscription_id,
        customer_id="cus_test_123",
        status=status,
        amount=Decimal(amount),
        interval=interval,
        current_period_start=start,
        current_period_end=period_end or start + timedelta(days=30),
        cancel_at_period_end=cancel_at_period_end,
    )


# ---------------------------------------------------------------------------
# Fake Stripe client
# ---------------------------------------------------------------------------


class FakeStripeClient:
    """In-memory stand-in for lectio.stripe.client.StripeClient."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.events: list[dict[str, Any]] = []
        self.retrieved: list[str] = []
        self.list_calls: list[dict[str, Any]] = []

    def retrieve_subscription(
        self,
        subscription_id: str,
        *,
        correlation_id: str | None = None,
    ) -> ProviderSubscription:
        self.retrieved.append(subscription_id)
        if subscription_id not in self.subscriptions:
            raise stripe.InvalidRequestError(
                f"No such subscription: '{subscription_id}'", "id"
            )
        return self.subscriptions[subscription_id]

    def list_events(self, *, created_gte: datetime, types: list[str]):
        self.list_calls.append({"created_gte": created_gte, "types": types})
        return iter(self.events)


# ---------------------------------------------------------------------------
# Fake content store
# ---------------------------------------------------------------------------


class FakeStore:
    """In-memory content store mirroring the repository SQL semantics.

    Every mutating call is appended to `writes`, so tests can assert that
    a request produced no store writes at all.
    """

    def __init__(self) -> None:
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.donations: dict[str, dict[str, Any]] = {}
        self.orders: dict[str, dict[str, Any]] = {}
        self.order_items: list[dict[str, Any]] = []
        self.products: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.events: dict[str, str] = {}
        self.emails: list[dict[str, Any]] = []
        self.writes: list[str] = []
        self.fail_on: set[str] = set()

    # -- seeding -----------------------------------------------------------

    def add_product(self, product_id: str, *, name: str, price: str, stock: int) -> None:
        self.products[product_id] = {
            "id": product_id,
            "name": name,
            "price": Decimal(price),
            "stock": stock,
        }

    def add_profile(self, user_id: str, *, email: str, full_name: str | None = None) -> None:
        self.profiles[user_id] = {"email": email, "full_name": full_name}

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise psycopg2.OperationalError(f"simulated failure in {operation}")

    # -- transactions ------------------------------------------------------

    @contextmanager
    def txn(self, conn=None):
        yield MagicMock()

    # -- subscriptions -----------------------------------------------------

    @staticmethod
    def _is_newer(row: dict[str, Any], event_at: datetime) -> bool:
        return row.get("last_event_at") is None or row["last_event_at"] <= event_at

    def upsert_subscription(self, cur, *, stripe_subscription_id, event_at, **fields) -> bool:
        self._maybe_fail("upsert_subscription")
        row = self.subscriptions.get(stripe_subscription_id)
        if row is not None and not self._is_newer(row, event_at):
            return False
        self.writes.append("upsert_subscription")
        self.subscriptions[stripe_subscription_id] = {
            "stripe_subscription_id": stripe_subscription_id,
            **fields,
            "last_event_at": event_at,
        }
        return True

    def update_subscription_period(
        self,
        cur,
        *,
        stripe_subscription_id,
        status,
        current_period_start,
        current_period_end,
        cancel_at_period_end,
        event_at,
    ) -> bool:
        self._maybe_fail("update_subscription_period")
        row = self.subscriptions.get(stripe_subscription_id)
        if row is None or not self._is_newer(row, event_at):
            return False
        self.writes.append("update_subscription_period")
        row.update(
            status=status,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            last_event_at=event_at,
        )
        return True

    def set_subscription_status(self, cur, *, stripe_subscription_id, status, event_at) -> bool:
        self._maybe_fail("set_subscription_status")
        row = self.subscriptions.get(stripe_subscription_id)
        if row is None or not self._is_newer(row, event_at):
            return False
        self.writes.append("set_subscription_status")
        row.update(status=status, last_event_at=event_at)
        return True

    def get_subscription_with_contact(self, cur, stripe_subscription_id):
        row = self.subscriptions.get(stripe_subscription_id)
        if row is None:
            return None
        profile = self.profiles.get(row.get("user_id")) or {}
        return {
            "user_id": row.get("user_id"),
            "tier": row.get("tier"),
            "amount": row.get("amount"),
            "status": row.get("status"),
            "current_period_end": row.get("current_period_end"),
            "email": profile.get("email"),
            "full_name": profile.get("full_name"),
        }

    def get_profile_contact(self, cur, user_id):
        profile = self.profiles.get(user_id)
        return dict(profile) if profile else None

    # -- donations ---------------------------------------------------------

    def insert_donation(self, cur, *, stripe_session_id, **fields) -> str | None:
        self._maybe_fail("insert_donation")
        if stripe_session_id in self.donations:
            return None
        self.writes.append("insert_donation")
        donation_id = str(uuid.uuid4())
        self.donations[stripe_session_id] = {
            "id": donation_id,
            "stripe_session_id": stripe_session_id,
            **fields,
        }
        return donation_id

    # -- orders and products -----------------------------------------------

    def insert_order(self, cur, *, stripe_session_id, **fields) -> str | None:
        self._maybe_fail("insert_order")
        if stripe_session_id in self.orders:
            return None
        self.writes.append("insert_order")
        order_id = str(uuid.uuid4())
        self.orders[stripe_session_id] = {
            "id": order_id,
            "status": "paid",
            "stripe_session_id": stripe_session_id,
            **fields,
        }
        return order_id

    def insert_order_items(self, cur, *, order_id, items) -> None:
        self._maybe_fail("insert_order_items")
        self.writes.append("insert_order_items")
        for item in items:
            self.order_items.append({"order_id": order_id, **item})

    def get_products_by_ids(self, cur, product_ids):
        self._maybe_fail("get_products_by_ids")
        rows = []
        for product_id in product_ids:
            product = self.products.get(product_id)
            if product is None:
                continue
            rows.append({**product, "snapshot": copy.deepcopy(product)})
        return rows

    def update_product_stock(self, cur, *, product_id, stock) -> None:
        self._maybe_fail("update_product_stock")
        self.writes.append("update_product_stock")
        self.products[product_id]["stock"] = stock

    # -- event receipts ----------------------------------------------------

    def is_event_processed(self, cur, event_id) -> bool:
        return event_id in self.events

    def record_processed_event(self, cur, *, event_id, event_type) -> bool:
        self.writes.append("record_processed_event")
        if event_id in self.events:
            return False
        self.events[event_id] = event_type
        return True

    # -- notifications -----------------------------------------------------

    def send_email_from_template(
        self,
        template_key,
        recipient_email,
        recipient_name,
        variables,
        **refs,
    ) -> EmailResult:
        self.emails.append(
            {
                "template_key": template_key,
                "to": recipient_email,
                "name": recipient_name,
                "variables": dict(variables),
                **refs,
            }
        )
        return EmailResult(success=True, message_id="<test@lectio.one>")


# Repository functions each domain module imports by name
PATCH_TARGETS: dict[str, tuple[str, ...]] = {
    "lectio.domain.reconcile": (
        "txn",
        "is_event_processed",
        "record_processed_event",
    ),
    "lectio.domain.subscriptions": (
        "txn",
        "upsert_subscription",
        "update_subscription_period",
        "set_subscription_status",
        "get_subscription_with_contact",
        "get_profile_contact",
        "send_email_from_template",
    ),
    "lectio.domain.donations": (
        "txn",
        "insert_donation",
        "send_email_from_template",
    ),
    "lectio.domain.orders": (
        "txn",
        "insert_order",
        "insert_order_items",
        "get_products_by_ids",
        "send_email_from_template",
    ),
    "lectio.domain.inventory": (
        "txn",
        "update_product_stock",
    ),
}
