"""Shopify REST Admin API lookups used by the notification checks.

Only the reads the relay needs: recent orders for a contact (to decide whether
a checkout converted) and a single order (for totals and names on fulfillment
messages).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ShopifyAdminClient:
    """Thin async wrapper over the Shopify REST Admin API."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: str = "2024-10",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._shop_domain = shop_domain
        self._access_token = access_token
        self._api_version = api_version
        self._client = client
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self._shop_domain and self._access_token)

    def _url(self, path: str) -> str:
        return f"https://{self._shop_domain}/admin/api/{self._api_version}/{path}.json"

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict:
        headers = {
            "X-Shopify-Access-Token": self._access_token,
            "Content-Type": "application/json",
        }
        if self._client is not None:
            response = await self._client.get(self._url(path), params=params, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(self._url(path), params=params, headers=headers)
        response.raise_for_status()
        return response.json()

    async def find_orders(
        self,
        *,
        email: str | None = None,
        phone: str | None = None,
        limit: int = 5,
    ) -> list[dict[str, Any]]:
        """Recent orders (any status) for an email or phone."""
        if not email and not phone:
            return []
        params: dict[str, Any] = {
            "fields": "id,checkout_token,cart_token",
            "status": "any",
            "limit": limit,
        }
        if email:
            params["email"] = email
        else:
            params["phone"] = phone
        result = await self._get("orders", params)
        return list(result.get("orders") or [])

    async def get_order(self, order_id: str) -> dict[str, Any]:
        result = await self._get(f"orders/{order_id}")
        return dict(result.get("order") or {})
