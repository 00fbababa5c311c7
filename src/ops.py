"""Operational triggers for manual use (admin shell, one-off scripts).

These go through the same router, scheduler, lock table and ledger as the
webhook path; nothing here sends a message directly.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from src.webhooks.dispatcher import Outcome, WebhookEvent
from src.webhooks.models import FulfillmentStatusEvent

if TYPE_CHECKING:
    from src.serve import Relay

logger = logging.getLogger(__name__)


async def run_sweep(relay: Relay) -> int:
    """Fire every due, unfired scheduled action now."""
    fired = await relay.scheduler.sweep()
    logger.info("Manual sweep fired %d action(s)", fired)
    return fired


async def run_debounce_tick(relay: Relay) -> int:
    """Evaluate every checkout that has been quiet for the debounce delay."""
    return await relay.router.run_debounce_tick()


async def mark_delivered_now(
    relay: Relay,
    order_id: str,
    fulfillment_id: str,
    *,
    delivered_at: datetime | None = None,
) -> Outcome:
    """Treat a fulfillment as delivered, as if Shopify had sent the event.

    Sends the delivery message (once) and schedules the review request.
    """
    event = FulfillmentStatusEvent(
        fulfillment_id=str(fulfillment_id),
        order_id=str(order_id),
        status="delivered",
        happened_at=delivered_at or datetime.now(timezone.utc),
    )
    webhook = WebhookEvent(
        topic="fulfillment_events/create",
        webhook_id=f"manual:{fulfillment_id}",
        event=event,
    )
    outcome = await relay.router.route(webhook)
    logger.info("Manual delivery for fulfillment %s: %s", fulfillment_id, outcome.value)
    return outcome
