"""Subscriptions repository - persistence for Stripe subscription mirrors.

Uses raw SQL with psycopg2 (no ORM).

Every write carries the creation time of the Stripe event that caused it
(event_at). A write is applied only when that time is not older than the
last applied event (last_event_at), so a late re-delivery of an older event
cannot roll back a newer state.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor

STATUS_CANCELLED = "cancelled"
STATUS_PAST_DUE = "past_due"


def upsert_subscription(
    cur: PgCursor,
    *,
    stripe_subscription_id: str,
    user_id: str,
    stripe_customer_id: str | None,
    tier: str,
    amount: Decimal,
    status: str,
    current_period_start: datetime,
    current_period_end: datetime,
    cancel_at_period_end: bool,
    event_at: datetime,
) -> bool:
    """Create or overwrite the subscription row keyed by Stripe id.

    Args:
        cur: Database cursor.
        stripe_subscription_id: Stripe subscription id (upsert key).
        user_id: Owning user id.
        stripe_customer_id: Stripe customer id.
        tier: Tier label (e.g. 'supporter').
        amount: Recurring amount in major currency units.
        status: Stripe subscription status.
        current_period_start: Start of current billing period.
        current_period_end: End of current billing period.
        cancel_at_period_end: Whether the subscription ends with the period.
        event_at: Creation time of the Stripe event being applied.

    Returns:
        True if a row was inserted or updated, False if a newer event
        had already been applied.
    """
    cur.execute(
        """
        INSERT INTO subscriptions (
            stripe_subscription_id, user_id, stripe_customer_id, tier,
            amount, status, current_period_start, current_period_end,
            cancel_at_period_end, last_event_at, updated_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
        ON CONFLICT (stripe_subscription_id) DO UPDATE
        SET user_id = EXCLUDED.user_id,
            stripe_customer_id = EXCLUDED.stripe_customer_id,
            tier = EXCLUDED.tier,
            amount = EXCLUDED.amount,
            status = EXCLUDED.status,
            current_period_start = EXCLUDED.current_period_start,
            current_period_end = EXCLUDED.current_period_end,
            cancel_at_period_end = EXCLUDED.cancel_at_period_end,
            last_event_at = EXCLUDED.last_event_at,
            updated_at = now()
        WHERE subscriptions.last_event_at IS NULL
           OR subscriptions.last_event_at <= EXCLUDED.last_event_at
        """,
        (
            stripe_subscription_id,
            user_id,
            stripe_customer_id,
            tier,
            amount,
            status,
            current_period_start,
            current_period_end,
            cancel_at_period_end,
            event_at,
        ),
    )
    return cur.rowcount > 0


def update_subscription_period(
    cur: PgCursor,
    *,
    stripe_subscription_id: str,
    status: str,
    current_period_start: datetime,
    current_period_end: datetime,
    cancel_at_period_end: bool,
    event_at: datetime,
) -> bool:
    """Apply status, billing period and cancel flag from Stripe.

    Returns:
        True if a row was updated. False if the subscription is unknown
        or a newer event had already been applied.
    """
    cur.execute(
        """
        UPDATE subscriptions
        SET status = %s,
            current_period_start = %s,
            current_period_end = %s,
            cancel_at_period_end = %s,
            last_event_at = %s,
            updated_at = now()
        WHERE stripe_subscription_id = %s
          AND (last_event_at IS NULL OR last_event_at <= %s)
        """,
        (
            status,
            current_period_start,
            current_period_end,
            cancel_at_period_end,
            event_at,
            stripe_subscription_id,
            event_at,
        ),
    )
    return cur.rowcount > 0


def set_subscription_status(
    cur: PgCursor,
    *,
    stripe_subscription_id: str,
    status: str,
    event_at: datetime,
) -> bool:
    """Set only the lifecycle status (used for cancellation and past_due).

    Returns:
        True if a row was updated.
    """
    cur.execute(
        """
        UPDATE subscriptions
        SET status = %s,
            last_event_at = %s,
            updated_at = now()
        WHERE stripe_subscription_id = %s
          AND (last_event_at IS NULL OR last_event_at <= %s)
        """,
        (status, event_at, stripe_subscription_id, event_at),
    )
    return cur.rowcount > 0


def get_subscription_with_contact(
    cur: PgCursor,
    stripe_subscription_id: str,
) -> dict[str, Any] | None:
    """Get a subscription joined with its owner's profile contact.

    Returns:
        Dict with user_id, tier, amount, status, current_period_end,
        email, full_name or None if not found.
    """
    cur.execute(
        """
        SELECT s.user_id, s.tier, s.amount, s.status, s.current_period_end,
               p.email, p.full_name
        FROM subscriptions s
        LEFT JOIN profiles p ON p.id = s.user_id
        WHERE s.stripe_subscription_id = %s
        """,
        (stripe_subscription_id,),
    )
    row = cur.fetchone()

    if row is None:
        return None

    return {
        "user_id": str(row[0]) if row[0] else None,
        "tier": row[1],
        "amount": row[2],
        "status": row[3],
        "current_period_end": row[4],
        "email": row[5],
        "full_name": row[6],
    }
