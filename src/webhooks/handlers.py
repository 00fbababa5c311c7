"""Webhook HTTP handlers — FastAPI route handlers for inbound Shopify webhooks.

Each handler:
1. Reads raw body (needed for HMAC verification)
2. Verifies the signature (401 on failure, nothing routed)
3. Returns 200 immediately so Shopify's retry policy never fires for a
   webhook we actually received
4. Validates, deduplicates and routes the event in a background task

Security contract:
- Never return error details to webhook caller (info disclosure)
- Return 200 for topic mismatches, invalid payloads and duplicates (don't
  leak rejection signals to probing)
- Return 401 only for signature failures
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from src.webhooks.dispatcher import WebhookEvent, parse_event
from src.webhooks.verification import (
    SIGNATURE_HEADER,
    TOPIC_HEADER,
    WEBHOOK_ID_HEADER,
    signature_failure,
)

if TYPE_CHECKING:
    from src.serve import Relay

logger = logging.getLogger(__name__)

# Endpoint path -> topics it accepts
ENDPOINT_TOPICS: dict[str, frozenset[str]] = {
    "/webhooks/checkouts": frozenset({"checkouts/create", "checkouts/update"}),
    "/webhooks/orders": frozenset({"orders/create"}),
    "/webhooks/fulfillments": frozenset({"fulfillments/create"}),
    "/webhooks/fulfillment-events": frozenset({"fulfillment_events/create"}),
    "/webhooks/refunds": frozenset({"refunds/create"}),
}

KNOWN_TOPICS: frozenset[str] = frozenset().union(*ENDPOINT_TOPICS.values())

# Counter buckets outside the known topics
UNAUTHORIZED_BUCKET = "unauthorized"
OTHER_BUCKET = "other"


def _received() -> JSONResponse:
    return JSONResponse({"status": "received"}, status_code=200)


def _count_bucket(topic: str, status: str) -> str:
    if status == "signature_failed":
        return UNAUTHORIZED_BUCKET
    return topic if topic in KNOWN_TOPICS else OTHER_BUCKET


def _log_webhook(relay: Relay, topic: str, webhook_id: str, status: str) -> None:
    """Audit log for webhook activity.

    Counters are keyed by a fixed set of buckets; the topic header is caller
    controlled and only known topics get their own counter.
    """
    counts = relay.webhook_counts
    bucket = _count_bucket(topic, status)
    counts[bucket] = counts.get(bucket, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT topic=%s id=%s status=%s count=%d",
        topic[:100],
        webhook_id[:100],
        status,
        counts[bucket],
    )


async def _route_in_background(relay: Relay, event: WebhookEvent) -> None:
    if relay.seen.is_duplicate(event.webhook_id):
        _log_webhook(relay, event.topic, event.webhook_id, "duplicate")
        return
    outcome = await relay.router.route(event)
    _log_webhook(relay, event.topic, event.webhook_id, outcome.value)


async def handle_webhook(
    request: Request,
    background: BackgroundTasks,
    relay: Relay,
    allowed_topics: frozenset[str],
) -> JSONResponse:
    """Generic webhook handler. Returns 200 on receipt, 401 on signature failure."""
    start = time.time()
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    topic = headers.get(TOPIC_HEADER, "")
    webhook_id = headers.get(WEBHOOK_ID_HEADER, "")

    # 1. Verify signature
    reason = signature_failure(
        body, headers.get(SIGNATURE_HEADER), relay.settings.shopify_webhook_secret
    )
    if reason is not None:
        logger.warning("Webhook rejected: topic=%s reason=%s", topic or "unknown", reason)
        _log_webhook(relay, topic or "unknown", webhook_id or "unknown", "signature_failed")
        return JSONResponse({"status": "unauthorized"}, status_code=401)

    # 2. Topic must match the endpoint
    if topic not in allowed_topics:
        _log_webhook(relay, topic or "unknown", webhook_id, "topic_mismatch")
        return _received()

    # 3. Parse JSON payload
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        _log_webhook(relay, topic, webhook_id, "invalid_json")
        return _received()

    # 4. Validate into a typed event
    event = parse_event(topic, payload, webhook_id)
    if event is None:
        _log_webhook(relay, topic, webhook_id, "invalid_payload")
        return _received()

    # 5. Ack now, route after the response is sent
    background.add_task(_route_in_background, relay, event)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook accepted in %.1fms: %s", elapsed_ms, topic)
    return _received()


def register_webhook_routes(app: FastAPI, relay: Relay) -> None:
    """Register one POST route per endpoint plus the status route."""

    def _make_route(allowed: frozenset[str]):
        async def webhook_route(request: Request, background: BackgroundTasks):
            return await handle_webhook(request, background, relay, allowed)

        return webhook_route

    for path, topics in ENDPOINT_TOPICS.items():
        app.add_api_route(path, _make_route(topics), methods=["POST"])

    @app.get("/webhooks/status")
    async def webhook_status():
        """Webhook receive counts and pending work."""
        return {
            "counts": dict(relay.webhook_counts),
            "debounce_pending": len(relay.debounce.pending()),
            "scheduled_unfired": len(relay.scheduler.unfired()),
            "locks_held": len(relay.locks.held()),
        }

    logger.info("Webhook routes registered: %s", ", ".join(ENDPOINT_TOPICS))
