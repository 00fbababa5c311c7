"""Relay application: component wiring and the FastAPI app factory.

Run with:
    python -m src.serve --port 3000
or any ASGI server pointed at ``src.serve:create_app`` (factory).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable

from dotenv import load_dotenv
from fastapi import FastAPI

from src.channels.doubletick import DoubleTickChannel
from src.channels.protocol import MessagingChannel
from src.config import Settings
from src.storage.locks import LockTable
from src.storage.store import AuditLog, JsonStore, now_ms
from src.tools.shopify_tool import ShopifyAdminClient
from src.webhooks.debounce import DebounceQueue
from src.webhooks.dispatcher import EventRouter
from src.webhooks.handlers import register_webhook_routes
from src.webhooks.idempotency import IdempotencyLedger, RecentContacts, SeenWebhooks
from src.webhooks.notifications import NotificationService
from src.webhooks.scheduling import DelayedActionScheduler

logger = logging.getLogger(__name__)


@dataclass
class Relay:
    """Every component of one relay instance, built around one data directory."""

    settings: Settings
    store: JsonStore
    audit: AuditLog
    locks: LockTable
    ledger: IdempotencyLedger
    seen: SeenWebhooks
    debounce: DebounceQueue
    scheduler: DelayedActionScheduler
    notifications: NotificationService
    router: EventRouter
    webhook_counts: dict[str, int] = field(default_factory=dict)


def build_relay(
    settings: Settings,
    *,
    channel: MessagingChannel | None = None,
    shopify: ShopifyAdminClient | None = None,
    clock: Callable[[], int] = now_ms,
) -> Relay:
    """Wire the relay components. Collaborators can be swapped for tests."""
    store = JsonStore(settings.data_dir)
    audit = AuditLog(store.data_dir / "events.jsonl")
    locks = LockTable(store, ttl_seconds=settings.lock_ttl_seconds, clock=clock)
    ledger = IdempotencyLedger(store, clock=clock)
    channel = channel or DoubleTickChannel(
        settings.doubletick_api_key, settings.doubletick_from_number
    )
    shopify = shopify or ShopifyAdminClient(
        settings.shopify_domain,
        settings.shopify_admin_token,
        api_version=settings.shopify_api_version,
    )
    notifications = NotificationService(channel, shopify, settings)
    scheduler = DelayedActionScheduler(
        store, locks, notifications.send_review_request, clock=clock
    )
    debounce = DebounceQueue(store, delay_seconds=settings.debounce_delay_seconds, clock=clock)
    router = EventRouter(
        ledger=ledger,
        locks=locks,
        debounce=debounce,
        scheduler=scheduler,
        notifications=notifications,
        audit=audit,
        review_delay_ms=settings.review_delay_ms,
        recent_contacts=RecentContacts(
            store, window_ms=settings.recent_contact_window_seconds * 1000, clock=clock
        ),
        clock=clock,
    )
    return Relay(
        settings=settings,
        store=store,
        audit=audit,
        locks=locks,
        ledger=ledger,
        seen=SeenWebhooks(store, clock=clock),
        debounce=debounce,
        scheduler=scheduler,
        notifications=notifications,
        router=router,
    )


def create_app(settings: Settings | None = None, relay: Relay | None = None) -> FastAPI:
    """Build the FastAPI app.

    With TESTING=1 the periodic jobs are not started; tests drive the
    debounce tick and the sweep directly.
    """
    if relay is None:
        if settings is None:
            load_dotenv()
            settings = Settings.from_env()
        relay = build_relay(settings)
    settings = relay.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if not settings.testing:
            from src.jobs import build_scheduler

            # Recover actions that came due while the process was down.
            await relay.scheduler.sweep()
            scheduler = build_scheduler(relay)
            scheduler.start()
            logger.info(
                "Relay jobs started: debounce every %ds, sweep every %ds",
                settings.debounce_tick_seconds,
                settings.sweep_interval_seconds,
            )
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            relay.scheduler.cancel_timers()

    app = FastAPI(title="Shopify Notification Relay", lifespan=lifespan)
    app.state.relay = relay
    register_webhook_routes(app, relay)
    return app


if __name__ == "__main__":
    import sys

    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = 3000
    for i, arg in enumerate(sys.argv):
        if arg == "--port" and i + 1 < len(sys.argv):
            port = int(sys.argv[i + 1])
    uvicorn.run("src.serve:create_app", factory=True, host="0.0.0.0", port=port)
