"""Stripe event dispatcher.

Routes a verified event to exactly one reconciliation handler by type.
Types without business meaning are acknowledged without side effects, so
event types Stripe adds later never fail the webhook.

Outcomes:
- processed: a handler ran and changed billing state (receipt recorded)
- skipped:   a handler ran and found nothing to change
- ignored:   informational or unknown type, no handler invoked
- duplicate: a receipt for this event id already exists

Handler exceptions propagate so the endpoint answers 5xx and Stripe retries.
"""

from __future__ import annotations

from typing import Callable, Literal

from lectio.domain.checkout_metadata import (
    CheckoutMetadataError,
    DonationCheckout,
    ProductOrderCheckout,
    SubscriptionCheckout,
    parse_checkout,
)
from lectio.domain.donations import handle_donation_checkout
from lectio.domain.orders import handle_order_checkout
from lectio.domain.subscriptions import (
    handle_invoice_paid,
    handle_invoice_payment_failed,
    handle_subscription_checkout,
    handle_subscription_deleted,
    handle_subscription_updated,
)
from lectio.infra.db import txn
from lectio.infra.repositories.stripe_events_repository import (
    is_event_processed,
    record_processed_event,
)
from lectio.observability.logging import get_logger
from lectio.observability.redaction import id_prefix, safe_log_context
from lectio.stripe.client import StripeClient
from lectio.stripe.webhook import StripeEvent

logger = get_logger(__name__)

Outcome = Literal["processed", "skipped", "ignored", "duplicate"]
Handler = Callable[..., bool]

CHECKOUT_COMPLETED = "checkout.session.completed"

# Seen on this endpoint but carry nothing to reconcile
INFORMATIONAL_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "invoice.created",
        "invoice.finalization_failed",
        "invoice.finalized",
        "invoice.payment_action_required",
        "invoice.upcoming",
        "invoice.updated",
        "payment_intent.created",
        "payment_intent.succeeded",
    }
)


def handle_checkout_completed(
    event: StripeEvent,
    *,
    stripe_client: StripeClient,
) -> bool:
    """Route a completed checkout by session mode / metadata type."""
    session = event.data_object

    try:
        checkout = parse_checkout(session)
    except CheckoutMetadataError as e:
        logger.warning(
            "checkout session not reconcilable",
            extra={
                "extra_fields": safe_log_context(
                    session_id_prefix=id_prefix(session.get("id")),
                    mode=session.get("mode"),
                    reason=str(e),
                )
            },
        )
        return False

    if isinstance(checkout, SubscriptionCheckout):
        return handle_subscription_checkout(event, checkout, stripe_client=stripe_client)
    if isinstance(checkout, DonationCheckout):
        return handle_donation_checkout(event, checkout, stripe_client=stripe_client)
    if isinstance(checkout, ProductOrderCheckout):
        return handle_order_checkout(event, checkout, stripe_client=stripe_client)
    return False


HANDLERS: dict[str, Handler] = {
    CHECKOUT_COMPLETED: handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
}

HANDLED_EVENT_TYPES = sorted(HANDLERS)


def dispatch_event(event: StripeEvent, *, stripe_client: StripeClient) -> Outcome:
    """Run the handler for a verified event.

    Args:
        event: Verified Stripe event.
        stripe_client: Client used by handlers that re-fetch state.

    Returns:
        The dispatch outcome.

    Raises:
        Exception: Whatever the handler raised (store or Stripe failure).
    """
    log_ctx = {
        "event_id_prefix": id_prefix(event.event_id),
        "event_type": event.event_type,
    }

    handler = HANDLERS.get(event.event_type)
    if handler is None:
        level = "informational" if event.event_type in INFORMATIONAL_EVENTS else "unhandled"
        logger.info(
            f"{level} stripe event acknowledged",
            extra={"extra_fields": safe_log_context(**log_ctx)},
        )
        return "ignored"

    with txn() as cur:
        already_processed = is_event_processed(cur, event.event_id)

    if already_processed:
        logger.info(
            "duplicate stripe event ignored",
            extra={"extra_fields": safe_log_context(**log_ctx)},
        )
        return "duplicate"

    changed = handler(event, stripe_client=stripe_client)

    if not changed:
        logger.info(
            "stripe event handled without state change",
            extra={"extra_fields": safe_log_context(**log_ctx)},
        )
        return "skipped"

    with txn() as cur:
        record_processed_event(cur, event_id=event.event_id, event_type=event.event_type)

    logger.info(
        "stripe event processed",
        extra={"extra_fields": safe_log_context(**log_ctx)},
    )
    return "processed"
