"""Orders repository - paid orders and their line items.

Uses raw SQL with psycopg2 (no ORM). Callers insert the order and its
items inside the same txn() so a failure leaves no partial order.
"""

import json
from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor

ORDER_STATUS_PAID = "paid"


def insert_order(
    cur: PgCursor,
    *,
    user_id: str | None,
    total: Decimal,
    stripe_payment_id: str | None,
    stripe_session_id: str,
    shipping_address: dict[str, str],
    customer_email: str | None,
    shipping_cost: Decimal,
    shipping_zone: str,
) -> str | None:
    """Insert a paid order unless the checkout session was already recorded.

    Returns:
        The new order id, or None if an order for this session exists.
    """
    cur.execute(
        """
        INSERT INTO orders (
            user_id, total, status, stripe_payment_id, stripe_session_id,
            shipping_address, customer_email, shipping_cost, shipping_zone
        )
        VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s)
        ON CONFLICT (stripe_session_id) DO NOTHING
        RETURNING id
        """,
        (
            user_id,
            total,
            ORDER_STATUS_PAID,
            stripe_payment_id,
            stripe_session_id,
            json.dumps(shipping_address),
            customer_email,
            shipping_cost,
            shipping_zone,
        ),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def insert_order_items(
    cur: PgCursor,
    *,
    order_id: str,
    items: list[dict[str, Any]],
) -> None:
    """Insert line items for an order.

    Args:
        cur: Database cursor (same transaction as insert_order).
        order_id: Parent order id.
        items: Dicts with product_id, product_snapshot, quantity, price.
    """
    cur.executemany(
        """
        INSERT INTO order_items (
            order_id, product_id, product_snapshot, quantity, price
        )
        VALUES (%s, %s, %s::jsonb, %s, %s)
        """,
        [
            (
                order_id,
                item["product_id"],
                json.dumps(item["product_snapshot"], default=str),
                item["quantity"],
                item["price"],
            )
            for item in items
        ],
    )
