"""Inventory adjustment for paid product orders.

Each product's stock is written in its own transaction, so one failing
update does not block the others. Stock is floored at zero.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable

import psycopg2

from lectio.domain.checkout_metadata import CartLine
from lectio.infra.db import txn
from lectio.infra.repositories.products_repository import update_product_stock
from lectio.observability.logging import get_logger
from lectio.observability.redaction import id_prefix, safe_log_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class StockAdjustment:
    """One applied stock change."""

    product_id: str
    previous_stock: int
    new_stock: int


def compute_new_stock(current_stock: int, ordered_qty: int) -> int:
    """Stock after an order: max(0, current - ordered)."""
    return max(0, current_stock - ordered_qty)


def ordered_quantities(lines: Iterable[CartLine]) -> dict[str, int]:
    """Sum quantities per product (a cart may repeat a product)."""
    totals: Counter[str] = Counter()
    for line in lines:
        totals[line.id] += line.qty
    return dict(totals)


def adjust_inventory(
    lines: Iterable[CartLine],
    products: dict[str, dict[str, Any]],
) -> list[StockAdjustment]:
    """Decrement stock for every ordered product.

    Args:
        lines: Cart lines of the order.
        products: Product rows by id, as fetched before the order insert.

    Returns:
        Adjustments that were persisted. Products whose update failed
        are logged and left out.
    """
    applied: list[StockAdjustment] = []

    for product_id, qty in ordered_quantities(lines).items():
        product = products.get(product_id)
        if product is None:
            continue

        previous = int(product["stock"])
        new_stock = compute_new_stock(previous, qty)

        try:
            with txn() as cur:
                update_product_stock(cur, product_id=product_id, stock=new_stock)
        except psycopg2.Error:
            logger.exception(
                "stock update failed",
                extra={
                    "extra_fields": safe_log_context(
                        product_id_prefix=id_prefix(product_id),
                        ordered_qty=qty,
                    )
                },
            )
            continue

        applied.append(
            StockAdjustment(
                product_id=product_id,
                previous_stock=previous,
                new_stock=new_stock,
            )
        )
        logger.info(
            "stock updated",
            extra={
                "extra_fields": safe_log_context(
                    product_id_prefix=id_prefix(product_id),
                    previous_stock=previous,
                    new_stock=new_stock,
                )
            },
        )

    return applied
