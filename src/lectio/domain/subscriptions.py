"""Subscription lifecycle reconciliation.

Handles the Stripe events that move a subscription through its life:
- checkout.session.completed (mode=subscription) -> upsert row
- customer.subscription.updated                 -> status/period/cancel flag
- customer.subscription.deleted                 -> status 'cancelled'
- invoice.paid                                  -> renewal (re-fetched period)
- invoice.payment_failed                        -> status 'past_due'

Writes are keyed by the Stripe subscription id and stamped with the
triggering event's creation time, including writes built from a re-fetch,
so the ordering guard compares Stripe timestamps only. Older events never
overwrite newer data.

Every handler returns True when it changed billing state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from lectio.domain.checkout_metadata import SubscriptionCheckout
from lectio.domain.side_effects import best_effort
from lectio.infra.db import txn
from lectio.infra.repositories.profiles_repository import get_profile_contact
from lectio.infra.repositories.subscriptions_repository import (
    STATUS_CANCELLED,
    STATUS_PAST_DUE,
    get_subscription_with_contact,
    set_subscription_status,
    update_subscription_period,
    upsert_subscription,
)
from lectio.infra.time import from_epoch, utc_now
from lectio.notifications.email_sender import send_email_from_template
from lectio.notifications.templates import format_currency, format_date, public_url
from lectio.observability.logging import get_logger
from lectio.observability.redaction import id_prefix, safe_log_context
from lectio.stripe.client import ProviderSubscription, StripeClient
from lectio.stripe.webhook import StripeEvent

logger = get_logger(__name__)

TIER_NAMES = {
    "supporter": "Supporter",
    "friend": "Priateľ",
    "patron": "Patrón",
    "benefactor": "Benefactor",
    "founder": "Zakladateľ",
}
TIER_BENEFITS = "Prístup k premium obsahu a podpora projektu"
DEFAULT_CUSTOMER_NAME = "Podporovateľ"
DEFAULT_FAILURE_REASON = "Nepodarilo sa stiahnuť platbu z karty"
PAYMENT_RETRY_ATTEMPTS = "3"


def _log(message: str, **fields: Any) -> None:
    logger.info(message, extra={"extra_fields": safe_log_context(**fields)})


def _interval_label(interval: str | None) -> str:
    return "mesiac" if interval == "month" else "rok"


def _period_from_payload(subscription: dict[str, Any]) -> tuple[datetime, datetime] | None:
    """Billing period from an event payload, or None if absent."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if not start or not end:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    if not start or not end:
        return None
    return from_epoch(start), from_epoch(end)


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription id attached to an invoice, across API versions."""
    subscription = invoice.get("subscription")
    if not subscription:
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription or None


# ---------------------------------------------------------------------------
# Subscription created (checkout completed in subscription mode)
# ---------------------------------------------------------------------------


def handle_subscription_checkout(
    event: StripeEvent,
    checkout: SubscriptionCheckout,
    *,
    stripe_client: StripeClient,
) -> bool:
    """Create or overwrite the subscription row after a subscription checkout."""
    session = event.data_object
    subscription_id = session.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")

    if not checkout.user_id or not checkout.tier:
        logger.warning(
            "subscription checkout missing user_id or tier; nothing to reconcile",
            extra={
                "extra_fields": safe_log_context(
                    session_id_prefix=id_prefix(session.get("id")),
                    has_user_id=bool(checkout.user_id),
                    has_tier=bool(checkout.tier),
                )
            },
        )
        return False

    if not subscription_id:
        logger.warning(
            "subscription checkout without subscription id",
            extra={
                "extra_fields": safe_log_context(
                    session_id_prefix=id_prefix(session.get("id")),
                )
            },
        )
        return False

    subscription = stripe_client.retrieve_subscription(subscription_id)

    with txn() as cur:
        applied = upsert_subscription(
            cur,
            stripe_subscription_id=subscription.subscription_id,
            user_id=checkout.user_id,
            stripe_customer_id=subscription.customer_id,
            tier=checkout.tier,
            amount=subscription.amount,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            event_at=event.created,
        )

    _log(
        "subscription upserted" if applied else "subscription upsert skipped (newer state stored)",
        subscription_id_prefix=id_prefix(subscription_id),
        status=subscription.status,
        tier=checkout.tier,
    )

    if applied:
        best_effort(
            "subscription_created_email",
            _notify_subscription_created,
            user_id=checkout.user_id,
            tier=checkout.tier,
            subscription=subscription,
        )
    return applied


def _notify_subscription_created(
    *,
    user_id: str,
    tier: str,
    subscription: ProviderSubscription,
) -> None:
    with txn() as cur:
        profile = get_profile_contact(cur, user_id)

    if not profile or not profile.get("email"):
        _log("no profile email for subscription notification", user_id=user_id)
        return

    send_email_from_template(
        "subscription_created",
        profile["email"],
        profile.get("full_name"),
        {
            "customer_name": profile.get("full_name") or DEFAULT_CUSTOMER_NAME,
            "tier_name": TIER_NAMES.get(tier, tier),
            "amount": format_currency(subscription.amount),
            "interval": _interval_label(subscription.interval),
            "start_date": format_date(subscription.current_period_start),
            "next_billing_date": format_date(subscription.current_period_end),
            "tier_benefits": TIER_BENEFITS,
            "account_url": public_url("/profile"),
        },
        user_id=user_id,
        subscription_id=subscription.subscription_id,
    )


# ---------------------------------------------------------------------------
# Subscription updated / deleted
# ---------------------------------------------------------------------------


def handle_subscription_updated(
    event: StripeEvent,
    *,
    stripe_client: StripeClient,
) -> bool:
    """Mirror status, billing period and cancel flag from the event payload."""
    subscription = event.data_object
    subscription_id = subscription.get("id")
    period = _period_from_payload(subscription)

    if not subscription_id or period is None:
        logger.warning(
            "subscription update without id or billing period",
            extra={
                "extra_fields": safe_log_context(
                    subscription_id_prefix=id_prefix(subscription_id),
                )
            },
        )
        return False

    with txn() as cur:
        applied = update_subscription_period(
            cur,
            stripe_subscription_id=subscription_id,
            status=subscription.get("status") or "unknown",
            current_period_start=period[0],
            current_period_end=period[1],
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            event_at=event.created,
        )

    _log(
        "subscription updated" if applied else "subscription update not applied",
        subscription_id_prefix=id_prefix(subscription_id),
        status=subscription.get("status"),
    )
    return applied


def handle_subscription_deleted(
    event: StripeEvent,
    *,
    stripe_client: StripeClient,
) -> bool:
    """Mark the subscription cancelled. The row is kept for billing history."""
    subscription_id = event.data_object.get("id")
    if not subscription_id:
        return False

    with txn() as cur:
        applied = set_subscription_status(
            cur,
            stripe_subscription_id=subscription_id,
            status=STATUS_CANCELLED,
            event_at=event.created,
        )

    _log(
        "subscription cancelled" if applied else "subscription cancel not applied",
        subscription_id_prefix=id_prefix(subscription_id),
    )
    return applied


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def handle_invoice_paid(
    event: StripeEvent,
    *,
    stripe_client: StripeClient,
) -> bool:
    """Renewal: re-fetch the subscription and store the new billing period.

    The invoice's own period fields describe the invoiced period, not the
    next one, so Stripe is asked for the authoritative state.
    """
    invoice = event.data_object
    subscription_id = invoice_subscription_id(invoice)

    if not subscription_id:
        _log("invoice without subscription; nothing to reconcile",
             invoice_id_prefix=id_prefix(invoice.get("id")))
        return False

    subscription = stripe_client.retrieve_subscription(subscription_id)

    with txn() as cur:
        applied = update_subscription_period(
            cur,
            stripe_subscription_id=subscription_id,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            event_at=event.created,
        )

    _log(
        "subscription renewed" if applied else "renewal not applied",
        subscription_id_prefix=id_prefix(subscription_id),
        status=subscription.status,
    )

    if applied:
        best_effort(
            "subscription_renewal_email",
            _notify_renewal,
            subscription_id=subscription_id,
            next_billing_date=subscription.current_period_end,
            receipt_url=invoice.get("hosted_invoice_url") or public_url("/profile"),
        )
    return applied


def _notify_renewal(
    *,
    subscription_id: str,
    next_billing_date: datetime,
    receipt_url: str,
) -> None:
    with txn() as cur:
        row = get_subscription_with_contact(cur, subscription_id)

    if not row or not row.get("email"):
        _log("no profile email for renewal notification",
             subscription_id_prefix=id_prefix(subscription_id))
        return

    send_email_from_template(
        "subscription_renewal",
        row["email"],
        row.get("full_name"),
        {
            "customer_name": row.get("full_name") or DEFAULT_CUSTOMER_NAME,
            "tier_name": TIER_NAMES.get(row["tier"], row["tier"]),
            "amount": format_currency(row["amount"]),
            "payment_date": format_date(utc_now()),
            "next_billing_date": format_date(next_billing_date),
            "receipt_url": receipt_url,
        },
        user_id=row.get("user_id"),
        subscription_id=subscription_id,
    )


def payment_failure_reason(invoice: dict[str, Any]) -> str:
    """Human-readable failure reason Stripe attached to the invoice."""
    for key in ("last_finalization_error", "last_payment_error"):
        error = invoice.get(key) or {}
        if error.get("message"):
            return error["message"]
    return DEFAULT_FAILURE_REASON


def handle_invoice_payment_failed(
    event: StripeEvent,
    *,
    stripe_client: StripeClient,
) -> bool:
    """Mark the subscription past_due and tell the subscriber."""
    invoice = event.data_object
    subscription_id = invoice_subscription_id(invoice)

    if not subscription_id:
        _log("failed invoice without subscription; nothing to reconcile",
             invoice_id_prefix=id_prefix(invoice.get("id")))
        return False

    with txn() as cur:
        applied = set_subscription_status(
            cur,
            stripe_subscription_id=subscription_id,
            status=STATUS_PAST_DUE,
            event_at=event.created,
        )

    _log(
        "subscription past_due" if applied else "past_due not applied",
        subscription_id_prefix=id_prefix(subscription_id),
    )

    if applied:
        best_effort(
            "payment_failed_email",
            _notify_payment_failed,
            subscription_id=subscription_id,
            reason=payment_failure_reason(invoice),
        )
    return applied


def _notify_payment_failed(*, subscription_id: str, reason: str) -> None:
    with txn() as cur:
        row = get_subscription_with_contact(cur, subscription_id)

    if not row or not row.get("email"):
        _log("no profile email for payment failure notification",
             subscription_id_prefix=id_prefix(subscription_id))
        return

    send_email_from_template(
        "payment_failed",
        row["email"],
        row.get("full_name"),
        {
            "customer_name": row.get("full_name") or DEFAULT_CUSTOMER_NAME,
            "tier_name": TIER_NAMES.get(row["tier"], row["tier"]),
            "error_reason": reason,
            "update_payment_url": public_url("/profile#subscription"),
            "retry_attempts": PAYMENT_RETRY_ATTEMPTS,
        },
        user_id=row.get("user_id"),
        subscription_id=subscription_id,
    )
