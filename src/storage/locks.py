"""Advisory lock table persisted in the JSON store.

Guarantees at most one handler in flight per key within this process.
try_acquire/release never block and never await, so a load-check-save cycle
cannot interleave with another coroutine; the threading lock covers jobs that
run in executor threads.

Locks carry their acquisition time. A lock older than the lease, or one whose
stored value is not a timestamp, is treated as left behind by a crashed
holder: acquire() takes it over and reap_stale() deletes it. The acquisition
time doubles as the lease token; a slow holder that releases with its token
after a takeover does not drop the new holder's lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from src.storage.store import JsonStore, as_ms, now_ms

logger = logging.getLogger(__name__)

LOCKS_DATASET = "in-process-locks"


class LockTable:
    """Non-blocking mutual exclusion keyed by opaque string."""

    def __init__(
        self,
        store: JsonStore,
        *,
        ttl_seconds: int | None = 900,
        clock: Callable[[], int] = now_ms,
        dataset: str = LOCKS_DATASET,
    ):
        self._store = store
        self._ttl_ms = ttl_seconds * 1000 if ttl_seconds else None
        self._clock = clock
        self._dataset = dataset
        self._mutex = threading.Lock()

    def _is_stale(self, acquired_at_ms: int | None, now: int) -> bool:
        if acquired_at_ms is None:
            return True
        return self._ttl_ms is not None and now - acquired_at_ms >= self._ttl_ms

    def acquire(self, key: str) -> int | None:
        """Take the lock for ``key`` and return its lease (acquisition time).

        Returns None if someone else holds a live lease.
        """
        with self._mutex:
            locks: dict = self._store.load(self._dataset, {})
            now = self._clock()
            held = locks.get(key)
            if held is not None:
                if not self._is_stale(as_ms(held), now):
                    return None
                logger.warning("Taking over stale lock %s (held since %s)", key, held)
            locks[key] = now
            self._store.save(self._dataset, locks)
            return now

    def try_acquire(self, key: str) -> bool:
        """Take the lock for ``key``. Returns False if someone else holds it."""
        return self.acquire(key) is not None

    def release(self, key: str, lease: int | None = None) -> None:
        """Drop the lock for ``key``. Releasing an absent lock is a no-op.

        With ``lease``, the lock is dropped only if it is still that lease;
        a holder whose lease was taken over leaves the new holder's lock alone.
        """
        with self._mutex:
            locks: dict = self._store.load(self._dataset, {})
            if key not in locks:
                return
            if lease is not None and as_ms(locks[key]) != lease:
                logger.warning("Lock %s was taken over, not releasing", key)
                return
            del locks[key]
            self._store.save(self._dataset, locks)

    def reap_stale(self) -> int:
        """Delete every lock older than the lease, or unreadable. Returns the number removed."""
        with self._mutex:
            locks: dict = self._store.load(self._dataset, {})
            now = self._clock()
            stale = [k for k, ts in locks.items() if self._is_stale(as_ms(ts), now)]
            if not stale:
                return 0
            for key in stale:
                del locks[key]
            self._store.save(self._dataset, locks)
        logger.warning("Reaped %d stale lock(s): %s", len(stale), ", ".join(stale))
        return len(stale)

    def held(self) -> dict[str, int]:
        return dict(self._store.load(self._dataset, {}))
