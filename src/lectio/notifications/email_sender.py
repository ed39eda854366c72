"""Templated email notifications over SMTP.

Security: NEVER log recipient addresses or rendered bodies. Only log
hashes, template keys and lengths.
"""

from __future__ import annotations

import os
import smtplib
import ssl
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Mapping

import psycopg2

from lectio.infra.db import txn
from lectio.infra.repositories.email_repository import (
    get_active_template,
    insert_email_log,
)
from lectio.notifications.templates import TemplateValue, render_template
from lectio.observability.logging import get_logger
from lectio.observability.redaction import hash_recipient, safe_log_context

logger = get_logger(__name__)

# Timeout for SMTP connections (seconds)
SMTP_TIMEOUT = 10

# Retry config
MAX_RETRIES = 1
RETRY_DELAY = 0.5

DEFAULT_SMTP_PORT = 465
DEFAULT_FROM = "Lectio Divina <info@lectio.one>"

# Failures worth one more attempt: dropped connections and 4xx replies
_TRANSIENT_ERRORS = (
    smtplib.SMTPServerDisconnected,
    smtplib.SMTPConnectError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class EmailResult:
    """Outcome of one templated send."""

    success: bool
    message_id: str | None = None
    error: str | None = None


def _get_smtp_config() -> dict[str, str | int]:
    """Get SMTP config from environment.

    Required env vars:
    - SMTP_HOST: SMTP server host
    - SMTP_USER: Login user
    - SMTP_PASS: Login password

    Optional:
    - SMTP_PORT: Port (default: 465, implicit TLS; any other port uses STARTTLS)
    """
    host = os.environ.get("SMTP_HOST", "")
    user = os.environ.get("SMTP_USER", "")
    password = os.environ.get("SMTP_PASS", "")

    if not host or not user or not password:
        raise RuntimeError("Missing SMTP config: SMTP_HOST, SMTP_USER, SMTP_PASS")

    return {
        "host": host,
        "port": int(os.environ.get("SMTP_PORT", DEFAULT_SMTP_PORT)),
        "user": user,
        "password": password,
    }


def _deliver(message: EmailMessage, config: Mapping[str, str | int]) -> None:
    """Open an SMTP session and send one message. Raises on error."""
    context = ssl.create_default_context()
    host = str(config["host"])
    port = int(config["port"])

    if port == 465:
        with smtplib.SMTP_SSL(host, port, timeout=SMTP_TIMEOUT, context=context) as smtp:
            smtp.login(str(config["user"]), str(config["password"]))
            smtp.send_message(message)
        return

    with smtplib.SMTP(host, port, timeout=SMTP_TIMEOUT) as smtp:
        smtp.starttls(context=context)
        smtp.login(str(config["user"]), str(config["password"]))
        smtp.send_message(message)


def _is_transient(error: Exception) -> bool:
    if isinstance(error, _TRANSIENT_ERRORS):
        return True
    return isinstance(error, smtplib.SMTPResponseException) and 400 <= error.smtp_code < 500


def send_via_smtp(message: EmailMessage) -> str:
    """Send a message, retrying once on transient failures.

    Returns:
        The Message-ID header of the sent message.

    Raises:
        RuntimeError: If SMTP config is missing.
        smtplib.SMTPException | OSError: On delivery failure after retry.
    """
    config = _get_smtp_config()
    message_id = message["Message-ID"] or make_msgid()
    if not message["Message-ID"]:
        message["Message-ID"] = message_id

    log_ctx = safe_log_context(
        to_hash=hash_recipient(str(message["To"])),
        subject_len=len(str(message["Subject"] or "")),
    )

    for attempt in range(MAX_RETRIES + 1):
        try:
            _deliver(message, config)
            logger.info(
                "email sent via smtp",
                extra={"extra_fields": {**log_ctx, "attempt": str(attempt)}},
            )
            return message_id
        except (smtplib.SMTPException, OSError) as e:
            if attempt < MAX_RETRIES and _is_transient(e):
                logger.warning(
                    "smtp send failed, retrying",
                    extra={
                        "extra_fields": {
                            **log_ctx,
                            "attempt": str(attempt),
                            "error_type": type(e).__name__,
                        }
                    },
                )
                time.sleep(RETRY_DELAY)
                continue

            logger.error(
                "smtp send failed",
                extra={
                    "extra_fields": {
                        **log_ctx,
                        "attempt": str(attempt),
                        "error_type": type(e).__name__,
                    }
                },
            )
            raise

    # Should not reach here, but for safety
    raise RuntimeError("smtp send loop exited without result")


def _build_message(
    *,
    template: Mapping[str, str | None],
    recipient_email: str,
    recipient_name: str | None,
    subject: str,
    body: str,
) -> EmailMessage:
    message = EmailMessage()
    if template.get("from_email"):
        message["From"] = formataddr((template.get("from_name") or "", template["from_email"]))
    else:
        message["From"] = os.environ.get("EMAIL_FROM", DEFAULT_FROM)
    message["To"] = formataddr((recipient_name or "", recipient_email))
    if template.get("reply_to"):
        message["Reply-To"] = template["reply_to"]
    message["Subject"] = subject
    message["Message-ID"] = make_msgid(domain="lectio.one")
    message.set_content("This message requires an HTML-capable email client.")
    message.add_alternative(body, subtype="html")
    return message


def send_email_from_template(
    template_key: str,
    recipient_email: str,
    recipient_name: str | None,
    variables: Mapping[str, TemplateValue],
    *,
    user_id: str | None = None,
    order_id: str | None = None,
    subscription_id: str | None = None,
    donation_id: str | None = None,
) -> EmailResult:
    """Render a stored template and send it.

    Every attempt is recorded in email_logs. Delivery failures are
    returned as EmailResult(success=False); only infrastructure errors
    (template lookup) raise.

    Args:
        template_key: Key in email_templates (e.g. 'order_confirmation').
        recipient_email: Recipient address. NEVER logged.
        recipient_name: Optional display name.
        variables: Values for {{name}} placeholders; booleans drive
            {{#flag}} blocks.
        user_id, order_id, subscription_id, donation_id: References for
            the email log.

    Returns:
        EmailResult describing the outcome.
    """
    log_ctx = safe_log_context(
        template_key=template_key,
        to_hash=hash_recipient(recipient_email),
    )

    with txn() as cur:
        template = get_active_template(cur, template_key)

    if template is None:
        logger.warning("email template not found", extra={"extra_fields": log_ctx})
        return EmailResult(success=False, error="Template not found")

    subject = render_template(template["subject"], variables)
    body = render_template(template["body"], variables)

    message = _build_message(
        template=template,
        recipient_email=recipient_email,
        recipient_name=recipient_name,
        subject=subject,
        body=body,
    )

    try:
        message_id = send_via_smtp(message)
        result = EmailResult(success=True, message_id=message_id)
    except (RuntimeError, smtplib.SMTPException, OSError) as e:
        result = EmailResult(success=False, error=f"{type(e).__name__}: {e}")

    try:
        with txn() as cur:
            insert_email_log(
                cur,
                template_id=template["id"],
                template_key=template_key,
                recipient_email=recipient_email,
                recipient_name=recipient_name,
                subject=subject,
                status="sent" if result.success else "failed",
                provider_message_id=result.message_id,
                error_message=result.error,
                user_id=user_id,
                order_id=order_id,
                subscription_id=subscription_id,
                donation_id=donation_id,
            )
    except psycopg2.Error:
        logger.exception("failed to record email log", extra={"extra_fields": log_ctx})

    logger.info(
        "templated email processed",
        extra={
            "extra_fields": {
                **log_ctx,
                "success": str(result.success).lower(),
                "body_len": str(len(body)),
            }
        },
    )
    return result
