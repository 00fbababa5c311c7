"""Security test fixtures.

Responsibilities:
- Creates the FastAPI `app` fixture around the shared test relay (TESTING=1,
  so no periodic jobs are started)
- Wraps it in `client` (attacker perspective: no signature)
- Provides `signed_post` for correctly signed webhook deliveries
- Provides malicious_payloads for fuzzing body fields

The global tests/conftest.py provides the relay, fake channel and fake Shopify.
"""

from __future__ import annotations

import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from src.serve import create_app
from src.webhooks.verification import compute_signature


@pytest.fixture
def app(relay):
    """FastAPI app bound to the test relay."""
    return create_app(relay=relay)


@pytest.fixture
def client(app):
    """Unsigned TestClient."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def signed_post(client, settings):
    """POST a webhook body signed with the configured secret.

    Returns the response. ``body`` may be a dict (JSON-encoded) or raw bytes.
    """

    def _post(
        path: str,
        body: dict[str, Any] | bytes,
        topic: str,
        webhook_id: str = "wh-1",
        secret: str | None = None,
    ):
        raw = body if isinstance(body, bytes) else json.dumps(body).encode()
        sig = compute_signature(settings.shopify_webhook_secret if secret is None else secret, raw)
        return client.post(
            path,
            content=raw,
            headers={
                "X-Shopify-Hmac-SHA256": sig,
                "X-Shopify-Topic": topic,
                "X-Shopify-Webhook-Id": webhook_id,
                "Content-Type": "application/json",
            },
        )

    return _post


@pytest.fixture
def malicious_payloads():
    """Collection of injection strings for fuzz testing."""
    return [
        "'; DROP TABLE orders; --",
        "<script>alert('xss')</script>",
        "../../../etc/passwd",
        "$(whoami)",
        "{{7*7}}",
        "test\x00admin",
        "admin\u200b",
        "A" * 100000,
    ]
