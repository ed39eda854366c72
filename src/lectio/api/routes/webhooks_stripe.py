"""Stripe webhook route - the single public entry point for Stripe events.

Security rules:
- Validate Stripe-Signature over the raw body on every request.
- Never log payload or signature header.
- Return 5xx if reconciliation fails (so Stripe retries).
- No business logic here - verify, dispatch, acknowledge.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from lectio.domain.reconcile import dispatch_event
from lectio.observability.correlation import get_correlation_id
from lectio.observability.logging import get_logger
from lectio.observability.redaction import id_prefix, safe_log_context
from lectio.stripe.client import StripeClient
from lectio.stripe.webhook import (
    InvalidPayloadError,
    InvalidSignatureError,
    MissingSignatureError,
    verify_event,
)

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

# Stripe client singleton, created on first use
_stripe_client: StripeClient | None = None


def _get_stripe_client() -> StripeClient:
    """Get Stripe client instance (allows test injection)."""
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client


def _get_webhook_secret() -> str:
    """Get Stripe webhook secret from environment."""
    secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET not configured")
    return secret


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
) -> JSONResponse:
    """Receive Stripe webhook events.

    ACK 2xx only if:
    1. Signature validated
    2. Event dispatched (handled, ignored or duplicate)

    Returns:
        200 {"received": true} if acknowledged.
        400 {"error": ...} if signature missing or invalid.
        500 {"error": ...} if reconciliation failed.
    """
    correlation_id = get_correlation_id()

    # Read raw body for signature validation
    payload_bytes = await request.body()

    try:
        webhook_secret = _get_webhook_secret()
    except RuntimeError:
        logger.error(
            "webhook secret not configured",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return _error(500, "Webhook handler failed")

    try:
        event = verify_event(payload_bytes, stripe_signature, webhook_secret)
    except MissingSignatureError:
        logger.warning(
            "stripe webhook without signature",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return _error(400, "No signature")
    except (InvalidSignatureError, InvalidPayloadError) as e:
        logger.warning(
            "stripe webhook rejected",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    reason=type(e).__name__,
                )
            },
        )
        return _error(400, "Invalid signature")

    # Log only safe metadata (no payload, no signature)
    logger.info(
        "stripe webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_id_prefix=id_prefix(event.event_id),
                event_type=event.event_type,
                livemode=event.livemode,
            )
        },
    )

    try:
        outcome = await run_in_threadpool(
            dispatch_event,
            event,
            stripe_client=_get_stripe_client(),
        )
    except Exception:
        logger.exception(
            "stripe webhook processing failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    event_id_prefix=id_prefix(event.event_id),
                    event_type=event.event_type,
                )
            },
        )
        return _error(500, "Webhook handler failed")

    logger.info(
        "stripe webhook acknowledged",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_id_prefix=id_prefix(event.event_id),
                outcome=outcome,
            )
        },
    )
    return JSONResponse(status_code=200, content={"received": True})
