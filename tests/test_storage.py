"""Tests for the durable JSON store, the audit log and the lock table.

Tests:
- load() falls back to empty defaults on missing/corrupt files
- save() is visible to a fresh store over the same directory (restart)
- Audit log appends never raise
- Lock table: exactly one winner under concurrency, idempotent release,
  stale-lock takeover, lease-token release and reaping
"""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest
from freezegun import freeze_time
from hypothesis import given, settings
from hypothesis import strategies as st

from src.storage.locks import LockTable
from src.storage.store import AuditLog, JsonStore, now_ms

from tests.fakes import FakeClock


# ── JsonStore ─────────────────────────────────────────────────────────────


class TestJsonStore:
    """Whole-document JSON persistence."""

    def test_missing_dataset_returns_default(self, store):
        assert store.load("nothing-here", {}) == {}
        assert store.load("nothing-here", set()) == set()

    def test_default_is_copied(self, store):
        default: dict = {}
        loaded = store.load("x", default)
        loaded["k"] = 1
        assert default == {}

    def test_save_then_load(self, store):
        store.save("records", {"a": {"n": 1}})
        assert store.load("records", {}) == {"a": {"n": 1}}

    def test_set_round_trips_as_sorted_list(self, store):
        store.save("tokens", {"b", "a"})
        assert store.path_for("tokens").read_text().replace(" ", "").replace("\n", "") == '["a","b"]'
        assert store.load("tokens", set()) == {"a", "b"}

    def test_corrupt_file_reads_as_empty(self, store):
        store.path_for("broken").write_text("{not json")
        assert store.load("broken", {}) == {}

    def test_wrong_shape_reads_as_empty(self, store):
        store.save("shape", [1, 2, 3])
        assert store.load("shape", {}) == {}

    def test_survives_restart(self, tmp_path):
        JsonStore(tmp_path / "d").save("locks", {"k": 1})
        assert JsonStore(tmp_path / "d").load("locks", {}) == {"k": 1}

    def test_no_temp_files_left_behind(self, store):
        store.save("a", {"x": 1})
        store.save("a", {"x": 2})
        leftovers = [p for p in store.data_dir.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []


class TestAuditLog:
    """Fire-and-forget JSON-lines audit log."""

    def test_appends_lines(self, tmp_path):
        log = AuditLog(tmp_path / "events.jsonl")
        log.append({"event": "a"})
        log.append({"event": "b"})
        entries = log.read()
        assert [e["event"] for e in entries] == ["a", "b"]
        assert all("ts" in e for e in entries)

    def test_write_failure_is_swallowed(self, tmp_path):
        # Parent directory does not exist -> OSError inside append
        log = AuditLog(tmp_path / "missing" / "events.jsonl")
        log.append({"event": "a"})
        assert log.read() == []

    def test_malformed_lines_skipped(self, tmp_path):
        path = tmp_path / "events.jsonl"
        path.write_text('{"event": "ok"}\nnot-json\n')
        assert AuditLog(path).read() == [{"event": "ok"}]


# ── LockTable ─────────────────────────────────────────────────────────────


class TestLockTable:
    """Non-blocking advisory locks."""

    def test_acquire_and_release(self, locks):
        assert locks.try_acquire("k") is True
        assert locks.try_acquire("k") is False
        locks.release("k")
        assert locks.try_acquire("k") is True

    def test_release_missing_is_noop(self, locks):
        locks.release("never-held")
        assert locks.held() == {}

    def test_keys_are_independent(self, locks):
        assert locks.try_acquire("a") is True
        assert locks.try_acquire("b") is True

    def test_records_acquisition_time(self, locks, clock):
        locks.try_acquire("k")
        assert locks.held() == {"k": clock.now}

    def test_lock_visible_across_instances(self, store, clock):
        LockTable(store, clock=clock).try_acquire("k")
        assert LockTable(store, clock=clock).try_acquire("k") is False

    def test_concurrent_threads_one_winner(self, locks):
        results: list[bool] = []
        barrier = threading.Barrier(16)

        def contend():
            barrier.wait()
            results.append(locks.try_acquire("hot"))

        threads = [threading.Thread(target=contend) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert results.count(False) == 15

    @pytest.mark.asyncio
    async def test_concurrent_coroutines_one_winner(self, locks):
        async def contend():
            await asyncio.sleep(0)
            return locks.try_acquire("hot")

        results = await asyncio.gather(*(contend() for _ in range(20)))
        assert results.count(True) == 1

    def test_stale_lock_taken_over(self, locks, clock):
        assert locks.try_acquire("k") is True
        clock.advance(900 * 1000)
        assert locks.try_acquire("k") is True
        assert locks.held()["k"] == clock.now

    def test_fresh_lock_not_taken_over(self, locks, clock):
        locks.try_acquire("k")
        clock.advance(899 * 1000)
        assert locks.try_acquire("k") is False

    def test_reap_stale(self, locks, clock):
        locks.try_acquire("old")
        clock.advance(600 * 1000)
        locks.try_acquire("young")
        clock.advance(300 * 1000)
        assert locks.reap_stale() == 1
        assert set(locks.held()) == {"young"}

    def test_no_ttl_never_stale(self, store):
        clock = FakeClock()
        table = LockTable(store, ttl_seconds=None, clock=clock)
        table.try_acquire("k")
        clock.advance(10**12)
        assert table.reap_stale() == 0
        assert table.try_acquire("k") is False

    def test_unreadable_lock_value_is_stale(self, store, locks, clock):
        store.save("in-process-locks", {"bad": "garbage", "live": clock.now})
        assert locks.try_acquire("bad") is True
        assert locks.held()["bad"] == clock.now

    def test_reap_drops_unreadable_values(self, store, locks, clock):
        store.save("in-process-locks", {"bad": [1], "live": clock.now})
        assert locks.reap_stale() == 1
        assert set(locks.held()) == {"live"}

    def test_acquire_returns_lease(self, locks, clock):
        assert locks.acquire("k") == clock.now
        assert locks.acquire("k") is None

    def test_release_after_takeover_keeps_new_holder(self, locks, clock):
        slow = locks.acquire("k")
        clock.advance(900 * 1000)
        fresh = locks.acquire("k")
        assert fresh is not None
        locks.release("k", slow)
        assert locks.held() == {"k": fresh}
        assert locks.try_acquire("k") is False
        locks.release("k", fresh)
        assert locks.held() == {}

    @given(n=st.integers(min_value=2, max_value=12))
    @settings(max_examples=20, deadline=None)
    def test_sequential_callers_only_first_wins(self, tmp_path_factory, n):
        table = LockTable(JsonStore(tmp_path_factory.mktemp("locks")), clock=FakeClock())
        results = [table.try_acquire("K") for _ in range(n)]
        assert results == [True] + [False] * (n - 1)
        table.release("K")
        assert table.try_acquire("K") is True


# ── Wall clock ────────────────────────────────────────────────────────────


class TestWallClock:
    """Default clock and audit timestamps follow the system clock."""

    def test_now_ms(self):
        with freeze_time("2024-01-01 00:00:00"):
            assert now_ms() == 1_704_067_200_000

    def test_audit_timestamp_is_utc(self, tmp_path):
        log = AuditLog(tmp_path / "events.jsonl")
        with freeze_time("2024-01-01 12:30:00"):
            log.append({"event": "a"})
        assert log.read()[0]["ts"] == "2024-01-01T12:30:00+00:00"

    def test_default_clock_lock_lease(self, store):
        with freeze_time("2024-01-01 00:00:00") as frozen:
            table = LockTable(store, ttl_seconds=60)
            table.try_acquire("k")
            frozen.tick(timedelta(seconds=59))
            assert table.try_acquire("k") is False
            frozen.tick(timedelta(seconds=1))
            assert table.try_acquire("k") is True
