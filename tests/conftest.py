"""Shared fixtures for the relay test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from src.config import Settings
from src.serve import Relay, build_relay
from src.storage.locks import LockTable
from src.storage.store import JsonStore

from tests.fakes import FakeChannel, FakeClock, FakeShopify


@pytest.fixture()
def repo_root() -> Path:
    """Return the repository root directory."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path) -> JsonStore:
    return JsonStore(tmp_path / "data")


@pytest.fixture()
def locks(store: JsonStore, clock: FakeClock) -> LockTable:
    return LockTable(store, ttl_seconds=900, clock=clock)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        shopify_webhook_secret="test-secret",
        shopify_domain="kaj.myshopify.com",
        shopify_admin_token="shpat_test",
        doubletick_api_key="dt-key",
        abandoned_checkout_template="kaj_abandoned_cart",
        order_confirmation_template="kaj_order_confirmed",
        fulfillment_template="kaj_order_shipped",
        refund_template="kaj_store_credit",
        review_button_url_template="https://kaj.example/review/{orderId}?n={orderName}",
        review_delay_ms=5 * 24 * 60 * 60 * 1000,
        debounce_delay_seconds=60,
        data_dir=tmp_path / "relay-data",
        testing=True,
    )


@pytest.fixture()
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture()
def shopify() -> FakeShopify:
    return FakeShopify()


@pytest.fixture()
def relay(settings: Settings, channel: FakeChannel, shopify: FakeShopify, clock: FakeClock) -> Relay:
    relay = build_relay(settings, channel=channel, shopify=shopify, clock=clock)
    yield relay
    relay.scheduler.cancel_timers()


@pytest.fixture()
def order_payload() -> dict[str, Any]:
    return {
        "id": 5550001,
        "name": "#1042",
        "confirmation_number": "ABC123",
        "total_price": "1499.00",
        "currency": "INR",
        "order_status_url": "https://kaj.example/orders/5550001/status",
        "customer": {"first_name": "Asha", "phone": "+91 98765 43210"},
        "shipping_address": {"first_name": "Asha", "phone": "98765 43210", "country_code": "IN"},
        "line_items": [{"product_id": 77, "variant_id": 88, "title": "Kurta"}],
    }


@pytest.fixture()
def checkout_payload() -> dict[str, Any]:
    return {
        "token": "chk_tok_1",
        "cart_token": "cart_1",
        "email": "asha@example.com",
        "phone": "+919876543210",
        "total_price": "899.00",
        "shipping_address": {"first_name": "Asha", "phone": "+91 98765 43210"},
        "line_items": [{"product_id": 77, "variant_id": 88}],
    }
