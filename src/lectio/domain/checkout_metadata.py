"""Checkout session metadata, validated at the boundary.

The storefront attaches string metadata to every Stripe checkout session
(user id, tier, cart contents, shipping address). Each known checkout
kind is one variant of a tagged union; anything else is rejected here so
handlers never read ad hoc fields.

Variants:
- subscription mode          -> SubscriptionCheckout
- metadata.type=donation     -> DonationCheckout
- metadata.type=product_order -> ProductOrderCheckout
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

# User markers the storefront sends when nobody is signed in
ANONYMOUS_USER = "anonymous"
GUEST_USER = "guest"


class CheckoutMetadataError(Exception):
    """Session metadata is missing or does not match any known variant."""


def _none_if_blank(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError as e:
            raise ValueError("not valid JSON") from e
    return value


class CartLine(BaseModel):
    """One cart line: product id and ordered quantity."""

    id: str = Field(min_length=1)
    qty: int = Field(gt=0)


class ShippingAddress(BaseModel):
    """Shipping address as stored on the order."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    street: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""
    phone: str = ""
    email: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return "" if value is None else str(value)


class SubscriptionCheckout(BaseModel):
    """Subscription-mode checkout. Both fields are required to reconcile."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["subscription"] = "subscription"
    user_id: str | None = None
    tier: str | None = None

    @field_validator("user_id", "tier", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return _none_if_blank(value)


class DonationCheckout(BaseModel):
    """One-off donation checkout."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["donation"]
    user_id: str | None = None
    message: str | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _resolve_user(cls, value: Any) -> Any:
        value = _none_if_blank(value)
        return None if value == ANONYMOUS_USER else value

    @field_validator("message", mode="before")
    @classmethod
    def _blank_message(cls, value: Any) -> Any:
        return _none_if_blank(value)


class ProductOrderCheckout(BaseModel):
    """Product order checkout carrying cart lines and shipping details."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["product_order"]
    user_id: str | None = None
    items: list[CartLine] = Field(min_length=1)
    shipping_cost: Decimal = Decimal("0")
    shipping_zone: str = ""
    shipping_address: ShippingAddress | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _resolve_user(cls, value: Any) -> Any:
        value = _none_if_blank(value)
        return None if value == GUEST_USER else value

    @field_validator("items", "shipping_address", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        return _load_json(_none_if_blank(value))

    @field_validator("shipping_cost", mode="before")
    @classmethod
    def _default_cost(cls, value: Any) -> Any:
        return _none_if_blank(value) or "0"


CheckoutMetadata = Annotated[
    Union[DonationCheckout, ProductOrderCheckout],
    Field(discriminator="type"),
]

_checkout_adapter: TypeAdapter[DonationCheckout | ProductOrderCheckout] = TypeAdapter(
    CheckoutMetadata
)

ParsedCheckout = Union[SubscriptionCheckout, DonationCheckout, ProductOrderCheckout]


def parse_checkout(session: dict[str, Any]) -> ParsedCheckout:
    """Classify a completed checkout session and validate its metadata.

    Args:
        session: The checkout.session object from the event.

    Returns:
        One of SubscriptionCheckout, DonationCheckout, ProductOrderCheckout.

    Raises:
        CheckoutMetadataError: If the session kind is unknown or its
            metadata is invalid for that kind.
    """
    metadata = session.get("metadata") or {}

    if session.get("mode") == "subscription":
        try:
            return SubscriptionCheckout.model_validate(metadata)
        except ValidationError as e:
            raise CheckoutMetadataError("invalid subscription metadata") from e

    if metadata.get("type") not in ("donation", "product_order"):
        raise CheckoutMetadataError(
            f"unknown checkout type: {metadata.get('type')!r}"
        )

    try:
        return _checkout_adapter.validate_python(metadata)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise CheckoutMetadataError(f"invalid {metadata['type']} metadata: {fields}") from e
