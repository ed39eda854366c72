"""Thin wrapper around Stripe SDK.

Purpose:
- Encapsulate Stripe API calls so domain code doesn't import stripe.* directly.
- Re-fetch authoritative subscription state (webhook payloads may be stale
  or lack billing period boundaries).
- Never log full Stripe payloads (only IDs + correlation metadata).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterator

import stripe

from lectio.infra.time import from_epoch
from lectio.observability.redaction import id_prefix

logger = logging.getLogger(__name__)

# Used when Stripe reports no billing period at all
DEFAULT_PERIOD = timedelta(days=30)


@dataclass(frozen=True)
class ProviderSubscription:
    """Authoritative subscription state as reported by Stripe."""

    subscription_id: str
    customer_id: str | None
    status: str
    amount: Decimal
    interval: str | None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool


def minor_to_major(amount: int | None) -> Decimal:
    """Convert Stripe minor units (cents) to a major-unit Decimal."""
    return (Decimal(amount or 0) / Decimal(100)).quantize(Decimal("0.01"))


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _resolve_period(subscription: dict[str, Any]) -> tuple[datetime, datetime]:
    """Read the billing period, wherever this API version reports it.

    Older API versions put current_period_* on the subscription, newer
    ones on each subscription item. If neither is present, the period
    is derived from the creation time.
    """
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")

    if start and end:
        return from_epoch(start), from_epoch(end)

    created = from_epoch(subscription.get("created") or 0)
    return created, created + DEFAULT_PERIOD


def subscription_from_dict(subscription: dict[str, Any]) -> ProviderSubscription:
    """Map a Stripe subscription dict to ProviderSubscription."""
    item = _first_item(subscription)
    price = item.get("price") or {}
    recurring = price.get("recurring") or {}
    period_start, period_end = _resolve_period(subscription)

    customer = subscription.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return ProviderSubscription(
        subscription_id=subscription["id"],
        customer_id=customer,
        status=subscription.get("status") or "unknown",
        amount=minor_to_major(price.get("unit_amount")),
        interval=recurring.get("interval"),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


class StripeClient:
    """Wrapper for the Stripe calls the reconciliation pipeline needs.

    Usage:
        client = StripeClient()  # reads STRIPE_SECRET_KEY from env
        sub = client.retrieve_subscription("sub_123")
        print(sub.status, sub.current_period_end)
    """

    def __init__(self, api_key: str | None = None) -> None:
        """Initialize the Stripe client.

        Args:
            api_key: Stripe secret key. Defaults to STRIPE_SECRET_KEY env var.

        Raises:
            RuntimeError: If no API key is provided or found in environment.
        """
        self._api_key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        if not self._api_key:
            raise RuntimeError(
                "Stripe API key not provided. "
                "Set STRIPE_SECRET_KEY or pass api_key parameter."
            )
        self._client = stripe.StripeClient(self._api_key)

    def retrieve_subscription(
        self,
        subscription_id: str,
        *,
        correlation_id: str | None = None,
    ) -> ProviderSubscription:
        """Retrieve a subscription by id.

        Raises:
            stripe.StripeError: On API failure (caller lets it propagate
                so the webhook is retried).
        """
        subscription = self._client.v1.subscriptions.retrieve(subscription_id)

        # Log only IDs
        logger.info(
            "stripe_subscription_retrieved",
            extra={
                "subscription_id_prefix": id_prefix(subscription_id),
                "correlation_id": correlation_id,
            },
        )

        return subscription_from_dict(subscription.to_dict())

    def list_events(
        self,
        *,
        created_gte: datetime,
        types: list[str],
    ) -> Iterator[dict[str, Any]]:
        """Iterate over events created at or after created_gte.

        Pages through the full result set. Events are yielded newest
        first, as Stripe returns them.
        """
        page = self._client.v1.events.list(
            params={
                "created": {"gte": int(created_gte.timestamp())},
                "types": types,
                "limit": 100,
            }
        )
        for event in page.auto_paging_iter():
            yield event.to_dict()
