"""Tests for the idempotency ledger, webhook delivery dedup and the contact window."""

from __future__ import annotations

from datetime import timedelta

from freezegun import freeze_time
from hypothesis import given, settings
from hypothesis import strategies as st

from src.storage.store import JsonStore
from src.webhooks.idempotency import (
    CATEGORIES,
    DELIVERY,
    ORDER_CONFIRMATION,
    IdempotencyLedger,
    RecentContacts,
    SeenWebhooks,
)

from tests.fakes import FakeClock


class TestIdempotencyLedger:
    """Per-category processed sets."""

    def test_unknown_key_not_processed(self, store):
        ledger = IdempotencyLedger(store)
        assert ledger.has_processed(DELIVERY, "123") is False

    def test_mark_then_has(self, store, clock):
        ledger = IdempotencyLedger(store, clock=clock)
        ledger.mark_processed(DELIVERY, "123")
        assert ledger.has_processed(DELIVERY, "123") is True
        assert ledger.processed_at(DELIVERY, "123") == clock.now

    def test_categories_are_independent(self, store):
        ledger = IdempotencyLedger(store)
        ledger.mark_processed(DELIVERY, "123")
        assert ledger.has_processed(ORDER_CONFIRMATION, "123") is False

    def test_mark_is_not_overwritten(self, store, clock):
        ledger = IdempotencyLedger(store, clock=clock)
        ledger.mark_processed(DELIVERY, "1")
        first = ledger.processed_at(DELIVERY, "1")
        clock.advance(10_000)
        ledger.mark_processed(DELIVERY, "1")
        assert ledger.processed_at(DELIVERY, "1") == first

    def test_empty_key_ignored(self, store):
        ledger = IdempotencyLedger(store)
        ledger.mark_processed(DELIVERY, "")
        assert ledger.has_processed(DELIVERY, "") is False

    def test_survives_restart(self, tmp_path):
        IdempotencyLedger(JsonStore(tmp_path)).mark_processed(DELIVERY, "42")
        assert IdempotencyLedger(JsonStore(tmp_path)).has_processed(DELIVERY, "42") is True

    def test_corrupt_dataset_reads_as_empty(self, store):
        ledger = IdempotencyLedger(store)
        store.path_for(ledger.dataset_for(DELIVERY)).write_text("garbage")
        assert ledger.has_processed(DELIVERY, "1") is False
        ledger.mark_processed(DELIVERY, "1")
        assert ledger.has_processed(DELIVERY, "1") is True

    @given(
        marks=st.lists(
            st.tuples(st.sampled_from(CATEGORIES), st.text(min_size=1, max_size=12)),
            max_size=15,
        )
    )
    @settings(max_examples=30, deadline=None)
    def test_marked_pairs_stay_processed_after_reload(self, tmp_path_factory, marks):
        data_dir = tmp_path_factory.mktemp("ledger")
        ledger = IdempotencyLedger(JsonStore(data_dir))
        for category, key in marks:
            ledger.mark_processed(category, key)
        reloaded = IdempotencyLedger(JsonStore(data_dir))
        for category, key in marks:
            assert reloaded.has_processed(category, key)


class TestSeenWebhooks:
    """Delivery-level dedup on the webhook id header."""

    def test_first_delivery_not_duplicate(self, store):
        assert SeenWebhooks(store).is_duplicate("wh_1") is False

    def test_redelivery_is_duplicate(self, store):
        seen = SeenWebhooks(store)
        seen.is_duplicate("wh_1")
        assert seen.is_duplicate("wh_1") is True

    def test_empty_id_never_duplicate(self, store):
        seen = SeenWebhooks(store)
        assert seen.is_duplicate("") is False
        assert seen.is_duplicate("") is False

    def test_ids_expire_after_ttl(self, store):
        clock = FakeClock()
        seen = SeenWebhooks(store, ttl_ms=1000, clock=clock)
        seen.is_duplicate("wh_1")
        clock.advance(1000)
        assert seen.is_duplicate("wh_1") is False

    def test_unreadable_timestamps_dropped(self, store):
        clock = FakeClock()
        store.save("seen-webhooks", {"wh_bad": "yesterday", "wh_1": clock.now})
        seen = SeenWebhooks(store, clock=clock)
        assert seen.is_duplicate("wh_2") is False
        assert seen.is_duplicate("wh_1") is True
        assert "wh_bad" not in store.load("seen-webhooks", {})

    def test_default_clock_expiry(self, store):
        with freeze_time("2024-01-01 00:00:00") as frozen:
            seen = SeenWebhooks(store)
            seen.is_duplicate("wh_1")
            frozen.tick(timedelta(hours=23))
            assert seen.is_duplicate("wh_1") is True
            frozen.tick(timedelta(hours=25))
            assert seen.is_duplicate("wh_1") is False


class TestRecentContacts:
    """Per-contact reminder window."""

    def test_marked_contact_is_recent(self, store):
        clock = FakeClock()
        recent = RecentContacts(store, window_ms=600_000, clock=clock)
        assert recent.recently_reminded("asha@example.com") is False
        recent.mark_reminded("asha@example.com")
        assert recent.recently_reminded("asha@example.com") is True
        assert recent.recently_reminded("9876543210") is False

    def test_window_expires(self, store):
        clock = FakeClock()
        recent = RecentContacts(store, window_ms=600_000, clock=clock)
        recent.mark_reminded("asha@example.com")
        clock.advance(599_999)
        assert recent.recently_reminded("asha@example.com") is True
        clock.advance(1)
        assert recent.recently_reminded("asha@example.com") is False

    def test_survives_restart(self, tmp_path):
        clock = FakeClock()
        RecentContacts(JsonStore(tmp_path), window_ms=600_000, clock=clock).mark_reminded("a@b.c")
        assert RecentContacts(JsonStore(tmp_path), window_ms=600_000, clock=clock).recently_reminded("a@b.c")

    def test_expired_and_unreadable_entries_pruned(self, store):
        clock = FakeClock()
        store.save("recently-reminded-contacts", {"old": clock.now - 600_000, "bad": "x"})
        RecentContacts(store, window_ms=600_000, clock=clock).mark_reminded("new")
        assert store.load("recently-reminded-contacts", {}) == {"new": clock.now}

    def test_empty_contact_and_zero_window_disable(self, store):
        recent = RecentContacts(store, window_ms=0, clock=FakeClock())
        recent.mark_reminded("asha@example.com")
        assert recent.recently_reminded("asha@example.com") is False
        assert RecentContacts(store, window_ms=600_000).recently_reminded("") is False
