"""Delayed-action scheduler: one durable future action per entity.

Two tiers:
- ScheduledAction records in the JSON store are the source of truth
- asyncio timers (loop.call_later) only shorten latency; they are lost on restart

The periodic sweep re-fires every due, unfired record, which is how actions
survive a restart or a lost timer. The timer and the sweep may race; fire()
takes the per-entity lock and re-reads the record before acting, so the action
runs at most once at a time and never after it has been marked fired.

Merge policy: the earliest due time wins (first qualifying event starts the
countdown). Fired records are never rescheduled or deleted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable

from src.storage.locks import LockTable
from src.storage.store import JsonStore, now_ms

logger = logging.getLogger(__name__)

SCHEDULED_DATASET = "scheduled-actions"

_LOCK_PREFIX = "scheduled"
_MAX_ERROR_LENGTH = 500


@dataclass
class ScheduledAction:
    """Durable record of a pending (or completed) future action."""

    entity_key: str
    due_at_ms: int
    fired: bool = False
    fired_at_ms: int | None = None
    created_at_ms: int = 0
    attempts: int = 0
    last_error: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledAction:
        return cls(
            entity_key=str(data["entity_key"]),
            due_at_ms=int(data["due_at_ms"]),
            fired=bool(data.get("fired", False)),
            fired_at_ms=data.get("fired_at_ms"),
            created_at_ms=int(data.get("created_at_ms", 0)),
            attempts=int(data.get("attempts", 0)),
            last_error=str(data.get("last_error", "")),
            payload=dict(data.get("payload") or {}),
        )


Action = Callable[[ScheduledAction], Awaitable[Any]]


class DelayedActionScheduler:
    """Schedules ``action`` per entity key at-or-after a due time."""

    def __init__(
        self,
        store: JsonStore,
        locks: LockTable,
        action: Action,
        *,
        name: str = "review",
        clock: Callable[[], int] = now_ms,
        dataset: str = SCHEDULED_DATASET,
    ):
        self._store = store
        self._locks = locks
        self._action = action
        self._name = name
        self._clock = clock
        self._dataset = dataset
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    # -- persistence -------------------------------------------------------

    def _load(self) -> dict[str, dict]:
        return self._store.load(self._dataset, {})

    def _save_record(self, record: ScheduledAction) -> None:
        records = self._load()
        records[record.entity_key] = record.to_dict()
        self._store.save(self._dataset, records)

    def get(self, entity_key: str) -> ScheduledAction | None:
        data = self._load().get(entity_key)
        if data is None:
            return None
        try:
            return ScheduledAction.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed scheduled action for %s, ignoring", entity_key)
            return None

    def all(self) -> list[ScheduledAction]:
        records = []
        for key in self._load():
            record = self.get(key)
            if record is not None:
                records.append(record)
        return records

    def unfired(self) -> list[ScheduledAction]:
        return [r for r in self.all() if not r.fired]

    # -- scheduling --------------------------------------------------------

    def schedule(
        self,
        entity_key: str,
        due_at_ms: int,
        payload: dict[str, Any] | None = None,
    ) -> ScheduledAction:
        """Create the action for ``entity_key`` or pull its due time earlier.

        A later due time than the one already stored is ignored; an already
        fired action is left untouched.
        """
        entity_key = str(entity_key)
        record = self.get(entity_key)
        if record is None:
            record = ScheduledAction(
                entity_key=entity_key,
                due_at_ms=int(due_at_ms),
                created_at_ms=self._clock(),
                payload=dict(payload or {}),
            )
            self._save_record(record)
            logger.info("Scheduled %s for %s at %d", self._name, entity_key, due_at_ms)
        elif record.fired:
            logger.info("%s for %s already fired, not rescheduling", self._name, entity_key)
            return record
        elif due_at_ms < record.due_at_ms:
            logger.info(
                "Moving %s for %s earlier: %d -> %d",
                self._name,
                entity_key,
                record.due_at_ms,
                due_at_ms,
            )
            record.due_at_ms = int(due_at_ms)
            if payload:
                record.payload = dict(payload)
            self._save_record(record)
        else:
            return record

        self._arm_timer(record)
        return record

    def _arm_timer(self, record: ScheduledAction) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): the sweep will pick it up.
            return
        existing = self._timers.pop(record.entity_key, None)
        if existing is not None:
            existing.cancel()
        delay = max(0.0, (record.due_at_ms - self._clock()) / 1000)
        key = record.entity_key
        self._timers[key] = loop.call_later(delay, self._spawn_fire, key)

    def _spawn_fire(self, entity_key: str) -> None:
        task = asyncio.ensure_future(self._on_timer(entity_key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_timer(self, entity_key: str) -> None:
        self._timers.pop(entity_key, None)
        await self.fire(entity_key)

    def cancel_timers(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    @property
    def armed_timers(self) -> set[str]:
        return set(self._timers)

    # -- execution ---------------------------------------------------------

    async def fire(self, entity_key: str) -> bool:
        """Run the action for ``entity_key`` if it is due and not yet fired.

        Returns True only when the action ran successfully and was marked
        fired. Action failures are recorded on the record and left for the
        next sweep.
        """
        lock_key = f"{_LOCK_PREFIX}:{self._name}:{entity_key}"
        lease = self._locks.acquire(lock_key)
        if lease is None:
            logger.info("%s for %s already in flight, skipping", self._name, entity_key)
            return False
        try:
            record = self.get(entity_key)
            if record is None or record.fired:
                return False
            if record.due_at_ms > self._clock():
                return False

            try:
                await self._action(record)
            except Exception as exc:
                latest = self.get(entity_key) or record
                latest.attempts += 1
                latest.last_error = str(exc)[:_MAX_ERROR_LENGTH]
                self._save_record(latest)
                logger.warning(
                    "%s for %s failed (attempt %d), will retry on sweep",
                    self._name,
                    entity_key,
                    latest.attempts,
                    exc_info=True,
                )
                return False

            latest = self.get(entity_key) or record
            latest.fired = True
            latest.fired_at_ms = self._clock()
            latest.attempts += 1
            latest.last_error = ""
            self._save_record(latest)
            logger.info("%s for %s fired", self._name, entity_key)
            return True
        finally:
            self._locks.release(lock_key, lease)

    async def sweep(self) -> int:
        """Fire every unfired action whose due time has passed.

        Reaps stale locks first so a crashed holder cannot wedge a key.
        Returns the number of actions fired.
        """
        self._locks.reap_stale()
        now = self._clock()
        due = sorted(
            (r for r in self.unfired() if r.due_at_ms <= now),
            key=lambda r: r.due_at_ms,
        )
        fired = 0
        for record in due:
            try:
                if await self.fire(record.entity_key):
                    fired += 1
            except Exception:
                logger.exception("Sweep failed for %s", record.entity_key)
        if due:
            logger.info("%s sweep: %d due, %d fired", self._name, len(due), fired)
        return fired
