"""Webhook idempotency: per-category ledger of already-sent notifications.

Contract:
- Each notification category owns its own dataset: processed-{category}
- Records are {key: processed_at_ms}; never mutated, never deleted
- mark_processed() is called only after the provider accepted the send, so a
  crash between send and mark can repeat a send (accepted at-least-once risk)
- Unreadable datasets read back as empty (see JsonStore.load)
"""

from __future__ import annotations

import logging
from typing import Callable

from src.storage.store import JsonStore, as_ms, now_ms

logger = logging.getLogger(__name__)

# Notification categories
ABANDONED_CHECKOUT = "abandoned-checkout"
ORDER_CONFIRMATION = "order-confirmation"
FULFILLMENT = "fulfillment"
DELIVERY = "delivery"
STORE_CREDIT_REFUND = "store-credit-refund"

CATEGORIES = (
    ABANDONED_CHECKOUT,
    ORDER_CONFIRMATION,
    FULFILLMENT,
    DELIVERY,
    STORE_CREDIT_REFUND,
)

_KEY_PREFIX = "processed"


class IdempotencyLedger:
    """Answers "has the side effect for (category, key) already happened?"."""

    def __init__(self, store: JsonStore, *, clock: Callable[[], int] = now_ms):
        self._store = store
        self._clock = clock

    @staticmethod
    def dataset_for(category: str) -> str:
        return f"{_KEY_PREFIX}-{category}"

    def _load(self, category: str) -> dict[str, int]:
        return self._store.load(self.dataset_for(category), {})

    def has_processed(self, category: str, key: str) -> bool:
        if not key:
            return False
        return str(key) in self._load(category)

    def mark_processed(self, category: str, key: str) -> None:
        """Record that the notification for ``key`` has been sent."""
        if not key:
            return
        records = self._load(category)
        key = str(key)
        if key in records:
            return
        records[key] = self._clock()
        self._store.save(self.dataset_for(category), records)
        logger.info("Marked processed: %s/%s", category, key)

    def processed_at(self, category: str, key: str) -> int | None:
        value = self._load(category).get(str(key))
        return int(value) if value is not None else None


_SEEN_DATASET = "seen-webhooks"
_DEDUP_TTL_MS = 24 * 60 * 60 * 1000


class SeenWebhooks:
    """Delivery-level dedup on X-Shopify-Webhook-Id.

    Shopify redelivers the same webhook id when it did not see a 2xx in time.
    Ids are remembered for 24h; an empty id can't be deduplicated and is
    always let through (the ledger still prevents duplicate sends).
    """

    def __init__(
        self,
        store: JsonStore,
        *,
        ttl_ms: int = _DEDUP_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._ttl_ms = ttl_ms
        self._clock = clock

    def is_duplicate(self, webhook_id: str | None) -> bool:
        """Check-and-mark: True if ``webhook_id`` was already seen."""
        if not webhook_id:
            return False
        seen: dict = self._store.load(_SEEN_DATASET, {})
        now = self._clock()
        fresh = {}
        for key, ts in seen.items():
            seen_at = as_ms(ts)
            if seen_at is not None and now - seen_at < self._ttl_ms:
                fresh[key] = seen_at
        if webhook_id in fresh:
            logger.info("Duplicate webhook delivery rejected: %s", webhook_id)
            return True
        fresh[webhook_id] = now
        self._store.save(_SEEN_DATASET, fresh)
        return False


_RECENT_CONTACTS_DATASET = "recently-reminded-contacts"


class RecentContacts:
    """Per-contact suppression window for abandoned-checkout reminders.

    A shopper who abandons several checkouts in a row gets one reminder per
    window, not one per checkout token. Records are {contact: reminded_at_ms};
    entries past the window are pruned whenever a new contact is recorded.
    """

    def __init__(
        self,
        store: JsonStore,
        *,
        window_ms: int,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._window_ms = window_ms
        self._clock = clock

    def _fresh(self) -> dict[str, int]:
        records: dict = self._store.load(_RECENT_CONTACTS_DATASET, {})
        now = self._clock()
        fresh = {}
        for contact, ts in records.items():
            reminded_at = as_ms(ts)
            if reminded_at is not None and now - reminded_at < self._window_ms:
                fresh[contact] = reminded_at
        return fresh

    def recently_reminded(self, contact: str) -> bool:
        if not contact or self._window_ms <= 0:
            return False
        return contact in self._fresh()

    def mark_reminded(self, contact: str) -> None:
        if not contact or self._window_ms <= 0:
            return
        fresh = self._fresh()
        fresh[contact] = self._clock()
        self._store.save(_RECENT_CONTACTS_DATASET, fresh)
