"""Email templates and delivery log."""

from typing import Any

from psycopg2.extensions import cursor as PgCursor


def get_active_template(cur: PgCursor, template_key: str) -> dict[str, Any] | None:
    """Get an active email template by key.

    Returns:
        Dict with id, template_key, subject, body, from_email, from_name,
        reply_to or None if no active template exists.
    """
    cur.execute(
        """
        SELECT id, template_key, subject, body, from_email, from_name, reply_to
        FROM email_templates
        WHERE template_key = %s AND is_active = true
        """,
        (template_key,),
    )
    row = cur.fetchone()

    if row is None:
        return None

    return {
        "id": str(row[0]),
        "template_key": row[1],
        "subject": row[2] or "",
        "body": row[3] or "",
        "from_email": row[4],
        "from_name": row[5],
        "reply_to": row[6],
    }


def insert_email_log(
    cur: PgCursor,
    *,
    template_id: str | None,
    template_key: str,
    recipient_email: str,
    recipient_name: str | None,
    subject: str,
    status: str,
    provider_message_id: str | None = None,
    error_message: str | None = None,
    user_id: str | None = None,
    order_id: str | None = None,
    subscription_id: str | None = None,
    donation_id: str | None = None,
) -> None:
    """Record one delivery attempt.

    Args:
        status: 'sent' or 'failed'.
        subscription_id: Stripe subscription id the email refers to.
    """
    cur.execute(
        """
        INSERT INTO email_logs (
            template_id, template_key, recipient_email, recipient_name,
            subject, status, provider, provider_message_id, error_message,
            user_id, order_id, subscription_id, donation_id, sent_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, 'smtp', %s, %s, %s, %s, %s, %s,
                CASE WHEN %s = 'sent' THEN now() END)
        """,
        (
            template_id,
            template_key,
            recipient_email,
            recipient_name,
            subject,
            status,
            provider_message_id,
            error_message,
            user_id,
            order_id,
            subscription_id,
            donation_id,
            status,
        ),
    )
