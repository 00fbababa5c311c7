"""Webhook event dispatcher — routes typed events to a handling strategy.

Strategies (static per topic):
- debounce: coalesce checkout updates, verify conversion after a quiet period
- direct:   ledger check -> lock -> re-check -> send -> mark processed -> unlock
- schedule: durable future action per entity (review request after delivery)

Contract:
- A notification is marked processed only after the provider accepted it
- A business check that says "no longer qualifies" marks nothing
- Failures of one event never reach another event's handling; every route
  ends in a logged outcome, never an exception
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from src.errors import MissingPrecondition, SendError
from src.storage.locks import LockTable
from src.storage.store import AuditLog, now_ms
from src.webhooks.debounce import DebounceQueue
from src.webhooks.idempotency import (
    ABANDONED_CHECKOUT,
    DELIVERY,
    FULFILLMENT,
    ORDER_CONFIRMATION,
    STORE_CREDIT_REFUND,
    IdempotencyLedger,
    RecentContacts,
)
from src.webhooks.models import (
    CheckoutEvent,
    FulfillmentEvent,
    FulfillmentStatusEvent,
    OrderEvent,
    RefundEvent,
    ShopifyEvent,
    UnsupportedTopic,
    parse_payload,
)
from src.webhooks.notifications import NotificationService
from src.webhooks.scheduling import DelayedActionScheduler

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    """How an event topic is handled."""
    DEBOUNCE = "debounce"
    DIRECT = "direct"
    SCHEDULE = "schedule"


class Outcome(str, Enum):
    """Terminal result of handling one event or one dispatch attempt."""
    SENT = "sent"
    QUEUED = "queued"
    SCHEDULED = "scheduled"
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"
    NOT_QUALIFYING = "not_qualifying"
    MISSING_PRECONDITION = "missing_precondition"
    FAILED = "failed"
    IGNORED = "ignored"


# Topic -> handling strategy
TOPIC_STRATEGIES: dict[str, Strategy] = {
    "checkouts/create": Strategy.DEBOUNCE,
    "checkouts/update": Strategy.DEBOUNCE,
    "orders/create": Strategy.DIRECT,
    "fulfillments/create": Strategy.DIRECT,
    "fulfillment_events/create": Strategy.SCHEDULE,
    "refunds/create": Strategy.DIRECT,
}

_MIN_CONTACT_DIGITS = 10


@dataclass
class WebhookEvent:
    """Authenticated, validated webhook ready for routing."""

    topic: str
    webhook_id: str
    event: ShopifyEvent

    @property
    def strategy(self) -> Strategy:
        return TOPIC_STRATEGIES[self.topic]

    @property
    def entity_key(self) -> str:
        return self.event.entity_key


def parse_event(topic: str, payload: Any, webhook_id: str = "") -> WebhookEvent | None:
    """Validate a raw webhook payload into a WebhookEvent.

    Returns None (and logs) for unrecognized topics or payloads that fail
    validation.
    """
    if not isinstance(payload, dict):
        logger.info("Webhook payload for %s is not an object, skipping", topic)
        return None
    try:
        event = parse_payload(topic, payload)
    except UnsupportedTopic:
        logger.info("Unrecognized webhook topic: %s, skipping", topic)
        return None
    except ValidationError as e:
        logger.warning("Invalid %s payload: %d error(s), skipping", topic, e.error_count())
        return None
    return WebhookEvent(topic=topic, webhook_id=webhook_id, event=event)


class EventRouter:
    """Routes events into the debounce queue, the scheduler or direct sends."""

    def __init__(
        self,
        *,
        ledger: IdempotencyLedger,
        locks: LockTable,
        debounce: DebounceQueue,
        scheduler: DelayedActionScheduler,
        notifications: NotificationService,
        audit: AuditLog,
        review_delay_ms: int,
        recent_contacts: RecentContacts | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.ledger = ledger
        self.locks = locks
        self.debounce = debounce
        self.scheduler = scheduler
        self.notifications = notifications
        self.audit = audit
        self.recent_contacts = recent_contacts
        self._review_delay_ms = review_delay_ms
        self._clock = clock

    # -- entry point -------------------------------------------------------

    async def route(self, webhook: WebhookEvent) -> Outcome:
        """Handle one webhook. Never raises."""
        try:
            outcome = await self._route(webhook)
        except Exception:
            logger.exception("Routing failed for %s %s", webhook.topic, webhook.entity_key)
            outcome = Outcome.FAILED
        self.audit.append(
            {
                "event": "webhook_routed",
                "topic": webhook.topic,
                "webhook_id": webhook.webhook_id,
                "key": webhook.entity_key,
                "strategy": webhook.strategy.value,
                "result": outcome.value,
            }
        )
        return outcome

    async def _route(self, webhook: WebhookEvent) -> Outcome:
        event = webhook.event
        if isinstance(event, CheckoutEvent):
            return self.queue_checkout(event)
        if isinstance(event, OrderEvent):
            return await self.dispatch_once(
                ORDER_CONFIRMATION, event.id, lambda: self.notifications.send_order_confirmation(event)
            )
        if isinstance(event, FulfillmentEvent):
            return await self.dispatch_once(
                FULFILLMENT, event.id, lambda: self.notifications.send_fulfillment(event)
            )
        if isinstance(event, FulfillmentStatusEvent):
            return await self.handle_delivered(event)
        if isinstance(event, RefundEvent):
            return await self.dispatch_once(
                STORE_CREDIT_REFUND, event.id, lambda: self.notifications.send_store_credit_refund(event)
            )
        return Outcome.IGNORED

    # -- debounce path -----------------------------------------------------

    def queue_checkout(self, checkout: CheckoutEvent) -> Outcome:
        if self.ledger.has_processed(ABANDONED_CHECKOUT, checkout.token):
            logger.info("Checkout %s already reminded", checkout.token)
            return Outcome.ALREADY_PROCESSED
        digits = "".join(ch for ch in checkout.contact_phone if ch.isdigit())
        if len(digits) < _MIN_CONTACT_DIGITS:
            logger.info("Checkout %s has no usable phone, skipping", checkout.token)
            return Outcome.MISSING_PRECONDITION
        self.debounce.record_update(checkout.token, checkout.model_dump(mode="json"))
        return Outcome.QUEUED

    async def evaluate_checkout(self, payload: dict[str, Any]) -> Outcome:
        """Debounce callback: verify the final snapshot and remind if abandoned."""
        checkout = CheckoutEvent.model_validate(payload)
        return await self.dispatch_once(
            ABANDONED_CHECKOUT,
            checkout.token,
            lambda: self._remind_contact(checkout),
        )

    async def _remind_contact(self, checkout: CheckoutEvent) -> bool:
        contact = checkout.contact_key
        if self.recent_contacts is not None and self.recent_contacts.recently_reminded(contact):
            logger.info("Contact for checkout %s reminded recently, skipping", checkout.token)
            return False
        sent = await self.notifications.send_abandoned_checkout(checkout)
        if sent and self.recent_contacts is not None:
            self.recent_contacts.mark_reminded(contact)
        return sent

    async def run_debounce_tick(self) -> int:
        return await self.debounce.evaluate(self.evaluate_checkout)

    # -- schedule path -----------------------------------------------------

    async def handle_delivered(self, event: FulfillmentStatusEvent) -> Outcome:
        """Delivered: send the delivery message now, schedule the review later."""
        if not event.is_delivered:
            logger.info(
                "Fulfillment %s status %s, nothing to do", event.fulfillment_id, event.status
            )
            return Outcome.IGNORED

        context = await self.notifications.delivery_context(event)
        delivered_at_ms = event.occurred_at_ms(self._clock())
        context["delivered_at_ms"] = delivered_at_ms
        self.scheduler.schedule(
            event.fulfillment_id, delivered_at_ms + self._review_delay_ms, context
        )

        outcome = await self.dispatch_once(
            DELIVERY, event.fulfillment_id, lambda: self.notifications.send_delivery(context)
        )
        return Outcome.SCHEDULED if outcome is Outcome.ALREADY_PROCESSED else outcome

    # -- direct path -------------------------------------------------------

    async def dispatch_once(
        self,
        category: str,
        key: str,
        send: Callable[[], Awaitable[bool]],
    ) -> Outcome:
        """Send at most once per (category, key).

        ``send`` returns True when it sent, False when the entity no longer
        qualifies. Collaborator failures are logged and not retried.
        """
        key = str(key)
        if self.ledger.has_processed(category, key):
            logger.info("Already processed %s/%s", category, key)
            return Outcome.ALREADY_PROCESSED

        lock_key = f"{category}:{key}"
        lease = self.locks.acquire(lock_key)
        if lease is None:
            logger.info("%s/%s already in flight", category, key)
            return Outcome.IN_FLIGHT

        try:
            # Re-check under the lock: another handler may have finished first.
            if self.ledger.has_processed(category, key):
                return Outcome.ALREADY_PROCESSED
            try:
                sent = await send()
            except MissingPrecondition as e:
                logger.warning("Skipping %s/%s: %s", category, key, e)
                self._audit_send(category, key, Outcome.MISSING_PRECONDITION, error=str(e))
                return Outcome.MISSING_PRECONDITION
            except SendError as e:
                logger.error(
                    "Send failed for %s/%s: %s status=%s response=%s",
                    category,
                    key,
                    e,
                    e.status_code,
                    e.response,
                )
                self._audit_send(category, key, Outcome.FAILED, error=str(e))
                return Outcome.FAILED
            except Exception as e:
                logger.exception("Unexpected failure sending %s/%s", category, key)
                self._audit_send(category, key, Outcome.FAILED, error=str(e))
                return Outcome.FAILED

            if not sent:
                self._audit_send(category, key, Outcome.NOT_QUALIFYING)
                return Outcome.NOT_QUALIFYING
            self.ledger.mark_processed(category, key)
            self._audit_send(category, key, Outcome.SENT)
            return Outcome.SENT
        finally:
            self.locks.release(lock_key, lease)

    def _audit_send(self, category: str, key: str, outcome: Outcome, error: str = "") -> None:
        entry: dict[str, Any] = {
            "event": "notification",
            "category": category,
            "key": key,
            "result": outcome.value,
        }
        if error:
            entry["error"] = error
        self.audit.append(entry)
