"""Donations repository - one immutable row per completed donation checkout.

Uses raw SQL with psycopg2 (no ORM).
"""

from decimal import Decimal

from psycopg2.extensions import cursor as PgCursor


def insert_donation(
    cur: PgCursor,
    *,
    user_id: str | None,
    amount: Decimal,
    stripe_payment_id: str | None,
    stripe_session_id: str,
    message: str | None,
    is_anonymous: bool,
) -> str | None:
    """Insert a donation unless the checkout session was already recorded.

    Args:
        cur: Database cursor.
        user_id: Donor user id, None for anonymous donors.
        amount: Amount in major currency units.
        stripe_payment_id: Stripe payment intent id.
        stripe_session_id: Stripe checkout session id (unique).
        message: Optional donor message.
        is_anonymous: True when no user could be resolved.

    Returns:
        The new donation id, or None if a donation for this session
        already exists.
    """
    cur.execute(
        """
        INSERT INTO donations (
            user_id, amount, stripe_payment_id, stripe_session_id,
            message, is_anonymous
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (stripe_session_id) DO NOTHING
        RETURNING id
        """,
        (
            user_id,
            amount,
            stripe_payment_id,
            stripe_session_id,
            message,
            is_anonymous,
        ),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None
