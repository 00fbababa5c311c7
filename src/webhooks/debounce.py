"""Debounce queue: coalesce bursts of updates to one entity into a single check.

Each update overwrites the pending snapshot for its key (last write wins) and
restarts the quiet period. A periodic tick pops every entry that has been quiet
for at least ``delay_seconds`` and hands the final payload to a callback,
exactly once per burst.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from src.storage.store import JsonStore, as_ms, now_ms

logger = logging.getLogger(__name__)

DEBOUNCE_DATASET = "debounced-checkouts"

Callback = Callable[[Any], Awaitable[Any]]


class DebounceQueue:
    """Last-write-wins map of pending entity snapshots."""

    def __init__(
        self,
        store: JsonStore,
        *,
        delay_seconds: int = 60,
        clock: Callable[[], int] = now_ms,
        dataset: str = DEBOUNCE_DATASET,
    ):
        self._store = store
        self._delay_ms = delay_seconds * 1000
        self._clock = clock
        self._dataset = dataset
        self._evaluating = False

    def record_update(self, key: str, payload: Any) -> None:
        """Replace the pending snapshot for ``key`` and restart its quiet period."""
        pending: dict = self._store.load(self._dataset, {})
        pending[key] = {"key": key, "payload": payload, "updatedAtMs": self._clock()}
        self._store.save(self._dataset, pending)
        logger.debug("Debounced update recorded for %s", key)

    def pending(self) -> dict[str, dict]:
        return self._well_formed(self._store.load(self._dataset, {}))

    @staticmethod
    def _well_formed(stored: dict) -> dict[str, dict]:
        entries = {}
        for key, entry in stored.items():
            if (
                isinstance(entry, dict)
                and "payload" in entry
                and as_ms(entry.get("updatedAtMs")) is not None
            ):
                entries[key] = {**entry, "key": key}
            else:
                logger.warning("Malformed debounce entry for %s, dropping", key)
        return entries

    def _pop_due(self) -> list[dict]:
        stored: dict = self._store.load(self._dataset, {})
        pending = self._well_formed(stored)
        now = self._clock()
        due = [
            entry
            for entry in pending.values()
            if now - as_ms(entry["updatedAtMs"]) >= self._delay_ms
        ]
        # Malformed entries are dropped from disk along with the due ones.
        if due or len(pending) != len(stored):
            for entry in due:
                pending.pop(entry["key"], None)
            self._store.save(self._dataset, pending)
        return due

    async def evaluate(self, callback: Callback) -> int:
        """Consume every quiet entry and run ``callback`` on its final payload.

        Entries are removed and persisted before any callback runs, so a burst
        is evaluated at most once even if a callback fails. Returns the number
        of entries consumed; a tick that overlaps a running one does nothing.
        """
        if self._evaluating:
            logger.debug("Debounce evaluation already running, skipping tick")
            return 0
        self._evaluating = True
        try:
            due = self._pop_due()
            for entry in due:
                try:
                    await callback(entry["payload"])
                except Exception:
                    logger.exception("Debounced evaluation failed for %s", entry["key"])
            return len(due)
        finally:
            self._evaluating = False
