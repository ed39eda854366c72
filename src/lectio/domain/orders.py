"""Product order reconciliation.

Strict sequence for a completed product checkout:
1. cart lines come validated from the session metadata
2. fetch current product rows
3. total = sum(current price x qty)
4. resolve shipping address (metadata first, Stripe-collected address second)
5. insert order + items in one transaction (unique per checkout session)
6. best-effort order confirmation email
7. decrement stock per product

A failure at any step stops the remaining steps; earlier steps are not
undone. A re-delivered event finds the existing order at step 5 and stops,
so stock is never decremented twice.
"""

from __future__ import annotations

import html
from decimal import Decimal
from typing import Any

import psycopg2

from lectio.domain.checkout_metadata import ProductOrderCheckout, ShippingAddress
from lectio.domain.donations import session_email
from lectio.domain.inventory import adjust_inventory
from lectio.domain.side_effects import best_effort
from lectio.infra.db import txn
from lectio.infra.repositories.orders_repository import insert_order, insert_order_items
from lectio.infra.repositories.products_repository import get_products_by_ids
from lectio.notifications.email_sender import send_email_from_template
from lectio.notifications.templates import format_currency
from lectio.observability.logging import get_logger
from lectio.observability.redaction import id_prefix, safe_log_context
from lectio.stripe.client import StripeClient
from lectio.stripe.webhook import StripeEvent

logger = get_logger(__name__)

DEFAULT_CUSTOMER_NAME = "Zákazník"


def order_total(checkout: ProductOrderCheckout, products: dict[str, dict[str, Any]]) -> Decimal:
    """Sum of current product price x ordered quantity."""
    return sum(
        (products[line.id]["price"] * line.qty for line in checkout.items),
        Decimal("0"),
    )


def resolve_shipping_address(
    session: dict[str, Any],
    metadata_address: ShippingAddress | None,
) -> dict[str, str]:
    """Merge the storefront's address with what Stripe collected.

    The metadata address wins field by field; the Stripe customer details
    fill the gaps. Returns {} when neither source has an address.
    """
    details = session.get("customer_details") or {}
    stripe_address = details.get("address") or {}

    if metadata_address is None and not stripe_address:
        return {}

    meta = metadata_address or ShippingAddress()
    return {
        "name": details.get("name") or meta.name,
        "street": meta.street or stripe_address.get("line1") or "",
        "city": meta.city or stripe_address.get("city") or "",
        "postal_code": meta.postal_code or stripe_address.get("postal_code") or "",
        "country": meta.country or stripe_address.get("country") or "",
        "phone": meta.phone or details.get("phone") or "",
        "email": session_email(session) or "",
    }


def _items_html(
    checkout: ProductOrderCheckout,
    products: dict[str, dict[str, Any]],
) -> str:
    return "".join(
        "<li>{} - {}× - {}</li>".format(
            html.escape(str(products[line.id]["name"] or "")),
            line.qty,
            format_currency(products[line.id]["price"]),
        )
        for line in checkout.items
    )


def handle_order_checkout(
    event: StripeEvent,
    checkout: ProductOrderCheckout,
    *,
    stripe_client: StripeClient,
) -> bool:
    """Create the paid order, confirm it to the customer and adjust stock."""
    session = event.data_object
    session_id = session["id"]
    log_ctx = {"session_id_prefix": id_prefix(session_id)}

    product_ids = [line.id for line in checkout.items]
    try:
        with txn() as cur:
            rows = get_products_by_ids(cur, product_ids)
    except psycopg2.Error:
        logger.exception(
            "could not fetch products; order not created",
            extra={"extra_fields": safe_log_context(**log_ctx)},
        )
        return False

    products = {row["id"]: row for row in rows}
    missing = sorted(set(product_ids) - products.keys())
    if missing:
        logger.error(
            "order references unknown products; order not created",
            extra={"extra_fields": safe_log_context(**log_ctx, missing_count=len(missing))},
        )
        return False

    total = order_total(checkout, products)
    shipping_address = resolve_shipping_address(session, checkout.shipping_address)
    customer_email = session_email(session)
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")

    with txn() as cur:
        order_id = insert_order(
            cur,
            user_id=checkout.user_id,
            total=total,
            stripe_payment_id=payment_intent,
            stripe_session_id=session_id,
            shipping_address=shipping_address,
            customer_email=customer_email,
            shipping_cost=checkout.shipping_cost,
            shipping_zone=checkout.shipping_zone,
        )
        if order_id is None:
            logger.info(
                "order already recorded for session",
                extra={"extra_fields": safe_log_context(**log_ctx)},
            )
            return False

        insert_order_items(
            cur,
            order_id=order_id,
            items=[
                {
                    "product_id": line.id,
                    "product_snapshot": products[line.id]["snapshot"],
                    "quantity": line.qty,
                    "price": products[line.id]["price"],
                }
                for line in checkout.items
            ],
        )

    logger.info(
        "order created",
        extra={
            "extra_fields": safe_log_context(
                **log_ctx,
                order_id=order_id,
                line_count=len(checkout.items),
                is_guest=checkout.user_id is None,
            )
        },
    )

    if customer_email:
        customer_name = shipping_address.get("name") or ""
        best_effort(
            "order_confirmation_email",
            send_email_from_template,
            "order_confirmation",
            customer_email,
            customer_name or None,
            {
                "customer_name": customer_name or DEFAULT_CUSTOMER_NAME,
                "order_number": order_id[:8].upper(),
                "total_amount": format_currency(total),
                "shipping_cost": format_currency(checkout.shipping_cost),
                "items": _items_html(checkout, products),
                "shipping_name": customer_name,
                "shipping_address": shipping_address.get("street", ""),
                "shipping_city": shipping_address.get("city", ""),
                "shipping_zip": shipping_address.get("postal_code", ""),
                "shipping_country": shipping_address.get("country", ""),
            },
            user_id=checkout.user_id,
            order_id=order_id,
        )

    adjust_inventory(checkout.items, products)
    return True
