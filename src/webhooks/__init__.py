"""Webhook inbound system.

Receives Shopify commerce webhooks, verifies their signatures, and routes each
event into a debounce queue, a durable delayed-action scheduler, or a direct
idempotent WhatsApp send.
"""
