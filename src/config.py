"""Runtime configuration for the notification relay.

All settings come from environment variables and are read once into a frozen
Settings object. Components receive the values they need through their
constructors; nothing below reads os.environ after startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

FIVE_DAYS_MS = 5 * 24 * 60 * 60 * 1000


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Relay settings (see SHOPIFY_*, DOUBLETICK_* and *_TEMPLATE_NAME env vars)."""

    # Shopify
    shopify_webhook_secret: str = ""
    shopify_domain: str = ""
    shopify_admin_token: str = ""
    shopify_api_version: str = "2024-10"

    # DoubleTick (WhatsApp provider)
    doubletick_api_key: str = ""
    doubletick_from_number: str = ""
    language: str = "en"
    default_dial_code: str = "+91"

    # Template names per notification category
    abandoned_checkout_template: str = ""
    order_confirmation_template: str = ""
    fulfillment_template: str = ""
    delivery_template: str = "kaj_order_delivered_v2"
    review_template: str = "kaj_order_review_v2"
    refund_template: str = ""
    review_button_url: str = ""
    review_button_url_template: str = ""

    # Timing
    review_delay_ms: int = FIVE_DAYS_MS
    debounce_delay_seconds: int = 60
    debounce_tick_seconds: int = 60
    sweep_interval_seconds: int = 300
    lock_ttl_seconds: int = 900
    recent_contact_window_seconds: int = 600

    # Persistence
    data_dir: Path = Path("data")

    testing: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        env = os.environ.get
        return cls(
            shopify_webhook_secret=env("SHOPIFY_WEBHOOK_SECRET", ""),
            shopify_domain=env("SHOPIFY_DOMAIN", ""),
            shopify_admin_token=env("SHOPIFY_ADMIN_TOKEN", ""),
            shopify_api_version=env("SHOPIFY_API_VERSION", "2024-10"),
            doubletick_api_key=env("DOUBLETICK_API_KEY", ""),
            doubletick_from_number=env("DOUBLETICK_FROM_NUMBER", ""),
            language=env("DT_LANGUAGE", "en"),
            default_dial_code=env("DEFAULT_DIAL_CODE", "+91"),
            abandoned_checkout_template=env("AC_TEMPLATE_NAME", ""),
            order_confirmation_template=env("OC_TEMPLATE_NAME", ""),
            fulfillment_template=env("OST_TEMPLATE_NAME", ""),
            delivery_template=env("OD_TEMPLATE_NAME", "kaj_order_delivered_v2"),
            review_template=env("REVIEW_TEMPLATE_NAME", "kaj_order_review_v2"),
            refund_template=env("REFUND_TEMPLATE_NAME", ""),
            review_button_url=env("REVIEW_BUTTON_URL", ""),
            review_button_url_template=env("REVIEW_BUTTON_URL_TEMPLATE", ""),
            review_delay_ms=_env_int("REVIEW_DELAY_MS", FIVE_DAYS_MS),
            debounce_delay_seconds=_env_int("DEBOUNCE_DELAY_SECONDS", 60),
            debounce_tick_seconds=_env_int("DEBOUNCE_TICK_SECONDS", 60),
            sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", 300),
            lock_ttl_seconds=_env_int("LOCK_TTL_SECONDS", 900),
            recent_contact_window_seconds=_env_int("RECENT_CONTACT_WINDOW_SECONDS", 600),
            data_dir=Path(env("DATA_DIR", "data")),
            testing=env("TESTING", "") == "1",
        )
