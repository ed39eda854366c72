"""Donation reconciliation for completed donation checkouts."""

from __future__ import annotations

from lectio.domain.checkout_metadata import DonationCheckout
from lectio.domain.side_effects import best_effort
from lectio.infra.db import txn
from lectio.infra.repositories.donations_repository import insert_donation
from lectio.infra.time import utc_now
from lectio.notifications.email_sender import send_email_from_template
from lectio.notifications.templates import format_currency, format_date, public_url
from lectio.observability.logging import get_logger
from lectio.observability.redaction import id_prefix, safe_log_context
from lectio.stripe.client import StripeClient, minor_to_major
from lectio.stripe.webhook import StripeEvent

logger = get_logger(__name__)

DEFAULT_DONOR_NAME = "Darujúci"


def session_email(session: dict) -> str | None:
    """Email captured on the checkout session (not the account email)."""
    details = session.get("customer_details") or {}
    return session.get("customer_email") or details.get("email") or None


def handle_donation_checkout(
    event: StripeEvent,
    checkout: DonationCheckout,
    *,
    stripe_client: StripeClient,
) -> bool:
    """Record the donation once per checkout session, then send a receipt."""
    session = event.data_object
    session_id = session["id"]
    amount = minor_to_major(session.get("amount_total"))
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")

    with txn() as cur:
        donation_id = insert_donation(
            cur,
            user_id=checkout.user_id,
            amount=amount,
            stripe_payment_id=payment_intent,
            stripe_session_id=session_id,
            message=checkout.message,
            is_anonymous=checkout.user_id is None,
        )

    if donation_id is None:
        logger.info(
            "donation already recorded for session",
            extra={
                "extra_fields": safe_log_context(
                    session_id_prefix=id_prefix(session_id),
                )
            },
        )
        return False

    logger.info(
        "donation recorded",
        extra={
            "extra_fields": safe_log_context(
                donation_id=donation_id,
                session_id_prefix=id_prefix(session_id),
                is_anonymous=checkout.user_id is None,
            )
        },
    )

    recipient = session_email(session)
    if recipient:
        details = session.get("customer_details") or {}
        donor_name = details.get("name") or DEFAULT_DONOR_NAME
        best_effort(
            "donation_receipt_email",
            send_email_from_template,
            "donation_receipt",
            recipient,
            donor_name,
            {
                "donor_name": donor_name,
                "amount": format_currency(amount),
                "message": checkout.message or "",
                "has_message": bool(checkout.message),
                "donation_date": format_date(utc_now()),
                "transaction_id": payment_intent or "",
                "receipt_url": public_url("/profile#donations"),
            },
            user_id=checkout.user_id,
            donation_id=donation_id,
        )
    return True
