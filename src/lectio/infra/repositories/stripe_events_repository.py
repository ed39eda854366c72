"""Receipts for Stripe events whose reconciliation completed.

Stripe delivers at least once; a receipt lets re-deliveries be
acknowledged without running the handler again.
"""

from psycopg2.extensions import cursor as PgCursor


def is_event_processed(cur: PgCursor, event_id: str) -> bool:
    """Return True if a receipt exists for this Stripe event id."""
    cur.execute(
        "SELECT 1 FROM stripe_events WHERE event_id = %s",
        (event_id,),
    )
    return cur.fetchone() is not None


def record_processed_event(
    cur: PgCursor,
    *,
    event_id: str,
    event_type: str,
) -> bool:
    """Insert a receipt with ON CONFLICT DO NOTHING.

    Returns:
        True if the receipt is new, False if it already existed.
    """
    cur.execute(
        """
        INSERT INTO stripe_events (event_id, event_type)
        VALUES (%s, %s)
        ON CONFLICT (event_id) DO NOTHING
        """,
        (event_id, event_type),
    )
    return cur.rowcount > 0
