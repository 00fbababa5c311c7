"""Notification flows: business checks and template sends per event type.

Each send_* coroutine either sends exactly one template message and returns
True, returns False when the entity no longer qualifies, or raises
MissingPrecondition / SendError. Idempotency and locking are the caller's job
(EventRouter.dispatch_once, DelayedActionScheduler.fire).
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import quote

from src.channels.protocol import MessagingChannel, SendResult
from src.config import Settings
from src.errors import MissingPrecondition
from src.tools.shopify_tool import ShopifyAdminClient
from src.webhooks.models import (
    CheckoutEvent,
    FulfillmentEvent,
    FulfillmentStatusEvent,
    OrderEvent,
    RefundEvent,
)
from src.webhooks.scheduling import ScheduledAction

logger = logging.getLogger(__name__)

_MIN_PHONE_DIGITS = 10


@dataclass
class Recipient:
    name: str
    digits: str
    country_code: str = "IN"

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def _digits(value: str | None) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


def _usable_digits(value: str | None) -> str:
    digits = _digits(value)
    return digits if len(digits) >= _MIN_PHONE_DIGITS else ""


def recipient_from(*addresses: Any, fallback_phone: str | None = None) -> Recipient:
    """First usable name/phone across the given addresses or customers.

    A phone with fewer than ten digits is skipped in favour of the next
    candidate.
    """
    name = ""
    digits = ""
    country = ""
    for addr in addresses:
        if addr is None:
            continue
        name = name or (getattr(addr, "first_name", None) or "")
        digits = digits or _usable_digits(getattr(addr, "phone", None))
        country = country or (getattr(addr, "country_code", None) or "")
    digits = digits or _usable_digits(fallback_phone)
    return Recipient(name=name or "Customer", digits=digits, country_code=country or "IN")


def _order_name(name: str | None, fallback: str) -> str:
    if not name:
        return fallback
    return str(name).replace("#", "").split(".")[0]


class NotificationService:
    """Builds and sends the customer-facing template messages."""

    def __init__(
        self,
        channel: MessagingChannel,
        shopify: ShopifyAdminClient,
        settings: Settings,
    ):
        self._channel = channel
        self._shopify = shopify
        self._settings = settings

    def phone_for(self, recipient: Recipient) -> str:
        if len(recipient.digits) < _MIN_PHONE_DIGITS:
            raise MissingPrecondition("No valid recipient phone number")
        return self._settings.default_dial_code + recipient.digits[-_MIN_PHONE_DIGITS:]

    async def _send(
        self,
        recipient: Recipient,
        template: str,
        placeholders: list[str],
        *,
        button_url: str | None = None,
    ) -> SendResult:
        if not template:
            raise MissingPrecondition("Template name not configured")
        return await self._channel.send(
            self.phone_for(recipient),
            template,
            self._settings.language,
            placeholders,
            button_url=button_url,
        )

    # -- abandoned checkout ------------------------------------------------

    async def checkout_converted(self, checkout: CheckoutEvent) -> bool:
        """Whether an order already exists for this checkout or its cart."""
        if checkout.completed_at:
            return True
        if not self._shopify.is_configured:
            logger.warning("Shopify admin API not configured, cannot verify checkout %s", checkout.token)
            return False
        try:
            orders = await self._shopify.find_orders(
                email=checkout.email, phone=None if checkout.email else checkout.contact_phone
            )
        except Exception:
            logger.warning("Order lookup failed for checkout %s", checkout.token, exc_info=True)
            return False
        for order in orders:
            if checkout.cart_token and order.get("cart_token") == checkout.cart_token:
                return True
            if order.get("checkout_token") == checkout.token:
                return True
        return False

    async def send_abandoned_checkout(self, checkout: CheckoutEvent) -> bool:
        if await self.checkout_converted(checkout):
            logger.info("Checkout %s converted, no reminder", checkout.token)
            return False
        recipient = recipient_from(checkout.shipping_address, fallback_phone=checkout.phone)
        recovery_path = f"checkouts/cn/{checkout.cart_token or checkout.token}/information"
        await self._send(
            recipient,
            self._settings.abandoned_checkout_template,
            [recipient.name, checkout.total_price or "0", recovery_path],
            button_url=recovery_path,
        )
        return True

    # -- orders and fulfillments ------------------------------------------

    async def send_order_confirmation(self, order: OrderEvent) -> bool:
        recipient = recipient_from(order.shipping_address, order.customer, fallback_phone=order.phone)
        status_url = order.order_status_url or ""
        await self._send(
            recipient,
            self._settings.order_confirmation_template,
            [
                recipient.name,
                order.confirmation_number or _order_name(order.name, order.id),
                order.total_price or "0",
                status_url,
            ],
            button_url=status_url or None,
        )
        return True

    async def send_fulfillment(self, fulfillment: FulfillmentEvent) -> bool:
        recipient = recipient_from(fulfillment.destination)
        await self._send(
            recipient,
            self._settings.fulfillment_template,
            [recipient.name, fulfillment.order_id, fulfillment.tracking_number or ""],
            button_url=fulfillment.tracking_url or None,
        )
        return True

    async def delivery_context(self, event: FulfillmentStatusEvent) -> dict[str, Any]:
        """Order name and recipient for a delivered fulfillment.

        Falls back to ids only when the order lookup fails; the review action
        retries the lookup later.
        """
        context: dict[str, Any] = {
            "order_id": event.order_id,
            "fulfillment_id": event.fulfillment_id,
            "order_name": event.order_id,
        }
        try:
            order = OrderEvent.model_validate(await self._shopify.get_order(event.order_id))
        except Exception:
            logger.warning("Order lookup failed for delivered fulfillment %s", event.fulfillment_id, exc_info=True)
            return context
        recipient = recipient_from(order.shipping_address, order.customer, fallback_phone=order.phone)
        context["order_name"] = _order_name(order.name, order.id)
        context["recipient"] = recipient.to_dict()
        return context

    async def send_delivery(self, context: dict[str, Any]) -> bool:
        recipient = await self._recipient_for_context(context)
        await self._send(
            recipient,
            self._settings.delivery_template,
            [recipient.name, str(context.get("order_name", ""))],
        )
        return True

    async def _recipient_for_context(self, context: dict[str, Any]) -> Recipient:
        data = context.get("recipient")
        if data:
            return Recipient(
                name=data.get("name") or "Customer",
                digits=_digits(data.get("digits")),
                country_code=data.get("country_code") or "IN",
            )
        order_id = context.get("order_id")
        if not order_id:
            raise MissingPrecondition("No order id to resolve recipient")
        order = OrderEvent.model_validate(await self._shopify.get_order(str(order_id)))
        return recipient_from(order.shipping_address, order.customer, fallback_phone=order.phone)

    # -- review request (scheduled) ---------------------------------------

    def review_button_url(self, order_id: str, order_name: str) -> str:
        template = self._settings.review_button_url_template
        if template:
            raw = template.replace("{orderId}", str(order_id)).replace(
                "{orderName}", quote(str(order_name or ""))
            )
        else:
            raw = self._settings.review_button_url
        return raw.strip()

    async def send_review_request(self, action: ScheduledAction) -> bool:
        """Scheduled action: ask for a review some days after delivery."""
        context = action.payload
        order_id = str(context.get("order_id", ""))
        order_name = str(context.get("order_name") or order_id)
        button_url = self.review_button_url(order_id, order_name)
        if not button_url:
            raise MissingPrecondition("Missing REVIEW_BUTTON_URL or REVIEW_BUTTON_URL_TEMPLATE")
        recipient = await self._recipient_for_context(context)
        await self._send(
            recipient,
            self._settings.review_template,
            [recipient.name, order_name],
            button_url=button_url,
        )
        return True

    # -- refunds -----------------------------------------------------------

    async def send_store_credit_refund(self, refund: RefundEvent) -> bool:
        if not refund.store_credit_transactions:
            logger.info("Refund %s has no store credit, no message", refund.id)
            return False
        recipient = await self._recipient_for_context({"order_id": refund.order_id})
        await self._send(
            recipient,
            self._settings.refund_template,
            [recipient.name, refund.order_id, f"{refund.store_credit_amount:.2f}"],
        )
        return True


__all__ = ["NotificationService", "Recipient", "recipient_from"]
