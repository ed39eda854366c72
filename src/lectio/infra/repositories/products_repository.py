"""Products repository - read for snapshots, write back stock counts.

Products are managed by the admin back-office; this service only reads
the current row and persists decremented stock.
"""

from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor


def get_products_by_ids(
    cur: PgCursor,
    product_ids: list[str],
) -> list[dict[str, Any]]:
    """Fetch products by id.

    Args:
        cur: Database cursor.
        product_ids: Product ids (duplicates allowed).

    Returns:
        List of dicts with id, name, price, stock and snapshot (the full
        row as JSON, used for order item snapshots). Unknown ids are
        simply absent.
    """
    cur.execute(
        """
        SELECT p.id, p.name, p.price, p.stock, to_jsonb(p)
        FROM products p
        WHERE p.id::text = ANY(%s)
        """,
        (list(set(product_ids)),),
    )
    return [
        {
            "id": str(row[0]),
            "name": row[1],
            "price": Decimal(row[2]) if row[2] is not None else Decimal("0"),
            "stock": row[3] or 0,
            "snapshot": row[4],
        }
        for row in cur.fetchall()
    ]


def update_product_stock(
    cur: PgCursor,
    *,
    product_id: str,
    stock: int,
) -> None:
    """Persist a new stock count for a product."""
    cur.execute(
        "UPDATE products SET stock = %s WHERE id::text = %s",
        (stock, product_id),
    )
