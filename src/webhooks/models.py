"""Typed webhook payloads.

Every inbound body is validated into one of a closed set of event models
before any routing happens. Unknown fields are ignored; numeric Shopify ids
are normalized to strings so they can be used as entity keys.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError


def _to_str(value: Any) -> Any:
    if value is None:
        return value
    if isinstance(value, (int, float)):
        return str(int(value))
    return value


EntityId = Annotated[str, BeforeValidator(_to_str)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Address(_Payload):
    first_name: str | None = None
    phone: str | None = None
    country_code: str | None = None


class Customer(_Payload):
    first_name: str | None = None
    phone: str | None = None
    email: str | None = None


class LineItem(_Payload):
    product_id: EntityId | None = None
    variant_id: EntityId | None = None
    title: str | None = None


class CheckoutEvent(_Payload):
    """checkouts/create, checkouts/update"""

    token: str = Field(min_length=1)
    cart_token: str | None = None
    email: str | None = None
    phone: str | None = None
    total_price: str | None = None
    completed_at: str | None = None
    abandoned_checkout_url: str | None = None
    shipping_address: Address | None = None
    line_items: list[LineItem] = Field(default_factory=list)

    @property
    def entity_key(self) -> str:
        return self.token

    @property
    def contact_phone(self) -> str:
        return self.phone or (self.shipping_address.phone if self.shipping_address else None) or ""

    @property
    def contact_key(self) -> str:
        """Who the reminder goes to: email, else the last ten phone digits."""
        email = (self.email or "").strip().lower()
        if email:
            return email
        digits = "".join(ch for ch in self.contact_phone if ch.isdigit())
        return digits[-10:]


class OrderEvent(_Payload):
    """orders/create"""

    id: EntityId
    name: str | None = None
    confirmation_number: str | None = None
    email: str | None = None
    phone: str | None = None
    total_price: str | None = None
    currency: str | None = None
    checkout_token: str | None = None
    cart_token: str | None = None
    order_status_url: str | None = None
    customer: Customer | None = None
    shipping_address: Address | None = None
    line_items: list[LineItem] = Field(default_factory=list)

    @property
    def entity_key(self) -> str:
        return self.id


class FulfillmentEvent(_Payload):
    """fulfillments/create"""

    id: EntityId
    order_id: EntityId
    name: str | None = None
    status: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    destination: Address | None = None
    line_items: list[LineItem] = Field(default_factory=list)

    @property
    def entity_key(self) -> str:
        return self.id


class FulfillmentStatusEvent(_Payload):
    """fulfillment_events/create — carrier status updates on a fulfillment."""

    id: EntityId | None = None
    fulfillment_id: EntityId
    order_id: EntityId
    status: str
    happened_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def entity_key(self) -> str:
        return self.fulfillment_id

    @property
    def is_delivered(self) -> bool:
        return self.status.lower() == "delivered"

    def occurred_at_ms(self, default_ms: int) -> int:
        stamp = self.happened_at or self.created_at
        if stamp is None:
            return default_ms
        return int(stamp.timestamp() * 1000)


class RefundTransaction(_Payload):
    kind: str | None = None
    gateway: str | None = None
    status: str | None = None
    amount: str | None = None


class RefundEvent(_Payload):
    """refunds/create"""

    id: EntityId
    order_id: EntityId
    note: str | None = None
    transactions: list[RefundTransaction] = Field(default_factory=list)

    @property
    def entity_key(self) -> str:
        return self.id

    @property
    def store_credit_transactions(self) -> list[RefundTransaction]:
        return [
            t
            for t in self.transactions
            if "store_credit" in (t.gateway or "").lower().replace("-", "_")
            and (t.status or "success") == "success"
        ]

    @property
    def store_credit_amount(self) -> float:
        total = 0.0
        for t in self.store_credit_transactions:
            try:
                total += float(t.amount or 0)
            except ValueError:
                continue
        return total


ShopifyEvent = Union[
    CheckoutEvent,
    OrderEvent,
    FulfillmentEvent,
    FulfillmentStatusEvent,
    RefundEvent,
]

TOPIC_MODELS: dict[str, type[_Payload]] = {
    "checkouts/create": CheckoutEvent,
    "checkouts/update": CheckoutEvent,
    "orders/create": OrderEvent,
    "fulfillments/create": FulfillmentEvent,
    "fulfillment_events/create": FulfillmentStatusEvent,
    "refunds/create": RefundEvent,
}


class UnsupportedTopic(ValueError):
    """Topic has no payload model."""


def parse_payload(topic: str, payload: dict[str, Any]) -> ShopifyEvent:
    """Validate ``payload`` for ``topic`` into its event model.

    Raises:
        UnsupportedTopic: topic is not one we handle
        pydantic.ValidationError: payload does not match the model
    """
    model = TOPIC_MODELS.get(topic)
    if model is None:
        raise UnsupportedTopic(topic)
    return model.model_validate(payload)  # type: ignore[return-value]


__all__ = [
    "Address",
    "CheckoutEvent",
    "Customer",
    "FulfillmentEvent",
    "FulfillmentStatusEvent",
    "LineItem",
    "OrderEvent",
    "RefundEvent",
    "RefundTransaction",
    "ShopifyEvent",
    "TOPIC_MODELS",
    "UnsupportedTopic",
    "ValidationError",
    "parse_payload",
]
