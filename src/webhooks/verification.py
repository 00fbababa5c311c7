"""Webhook signature verification — constant-time HMAC over the raw body.

Security contract:
- Shopify sends X-Shopify-Hmac-Sha256: base64(HMAC-SHA256(secret, raw_body))
- Comparison uses hmac.compare_digest() (constant-time, no timing attacks)
- Missing secret -> verification always fails (fail-closed)
- Missing or mismatched header -> 401, no payload processing
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-shopify-hmac-sha256"
TOPIC_HEADER = "x-shopify-topic"
WEBHOOK_ID_HEADER = "x-shopify-webhook-id"


def compute_signature(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 digest of ``body``, as Shopify computes it."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_shopify(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify Shopify webhook HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature_header: Value of X-Shopify-Hmac-Sha256 header
        secret: Shared webhook secret

    Returns:
        True if signature is valid
    """
    return signature_failure(body, signature_header, secret) is None


def signature_failure(body: bytes, signature_header: str | None, secret: str) -> str | None:
    """Return why verification failed, or None when the signature is valid."""
    if not secret:
        logger.warning("SHOPIFY_WEBHOOK_SECRET not set — rejecting webhook")
        return "secret_not_configured"
    if not signature_header:
        return "missing_signature"

    computed = compute_signature(secret, body)
    if not hmac.compare_digest(computed, signature_header.strip()):
        return "signature_mismatch"
    return None
