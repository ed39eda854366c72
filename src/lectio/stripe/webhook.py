"""Stripe webhook signature validation and payload parsing.

Purpose:
- Validate the Stripe-Signature header over the raw, unmodified body.
- Parse the verified body into a typed StripeEvent for the dispatcher.
- Never log payload or signature.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import stripe

from lectio.infra.time import from_epoch

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Base class for requests rejected at the verification boundary."""


class MissingSignatureError(WebhookVerificationError):
    """Request carried no Stripe-Signature header."""


class InvalidSignatureError(WebhookVerificationError):
    """Webhook signature validation failed."""


class InvalidPayloadError(WebhookVerificationError):
    """Payload structure is invalid or missing required fields."""


@dataclass(frozen=True)
class StripeEvent:
    """A verified Stripe event."""

    event_id: str
    event_type: str
    created: datetime
    livemode: bool = False
    data_object: dict[str, Any] = field(default_factory=dict)

    @property
    def object_id(self) -> str | None:
        """Primary object id (checkout session, subscription, invoice)."""
        return self.data_object.get("id")


def verify_event(
    payload_bytes: bytes,
    signature_header: str | None,
    webhook_secret: str,
    *,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> StripeEvent:
    """Validate Stripe webhook signature and build the typed event.

    The signature is checked over the exact bytes received. JSON parsing
    only happens after the check passes.

    Args:
        payload_bytes: Raw request body bytes.
        signature_header: Value of Stripe-Signature header.
        webhook_secret: Webhook endpoint secret from Stripe.
        tolerance: Maximum age of the signed timestamp, in seconds.

    Returns:
        StripeEvent with id, type, created time and data.object.

    Raises:
        MissingSignatureError: If no signature header was sent.
        InvalidSignatureError: If signature validation fails.
        InvalidPayloadError: If event structure is invalid.
    """
    if not signature_header:
        raise MissingSignatureError("No signature")

    try:
        payload_text = payload_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning("stripe webhook payload is not utf-8")
        raise InvalidPayloadError("Invalid payload") from e

    try:
        stripe.WebhookSignature.verify_header(
            payload_text,
            signature_header,
            webhook_secret,
            tolerance,
        )
    except stripe.SignatureVerificationError as e:
        # Do NOT log signature or payload
        logger.warning("stripe webhook signature verification failed")
        raise InvalidSignatureError("Invalid signature") from e

    try:
        event = json.loads(payload_text)
    except ValueError as e:
        logger.warning("stripe webhook payload parsing failed")
        raise InvalidPayloadError("Invalid payload") from e

    if not isinstance(event, dict):
        raise InvalidPayloadError("Event is not an object")

    return parse_event(event)


def parse_event(event: dict[str, Any]) -> StripeEvent:
    """Build a StripeEvent from an already-trusted event dict.

    Used directly by the replay job, whose events come from the Stripe
    API rather than from a signed request.

    Raises:
        InvalidPayloadError: If id, type or data.object are missing.
    """
    event_id = event.get("id")
    event_type = event.get("type")

    if not event_id or not event_type:
        raise InvalidPayloadError("Missing event id or type")

    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise InvalidPayloadError("Missing data.object")

    created = event.get("created")
    if not isinstance(created, (int, float)):
        raise InvalidPayloadError("Missing event created timestamp")

    return StripeEvent(
        event_id=event_id,
        event_type=event_type,
        created=from_epoch(created),
        livemode=bool(event.get("livemode", False)),
        data_object=obj,
    )
