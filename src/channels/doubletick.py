"""DoubleTick WhatsApp channel — template messages via the DoubleTick public API.

Security: API key passed in from Settings (DOUBLETICK_API_KEY), never logged.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.channels.protocol import SendResult
from src.errors import MissingPrecondition, SendError

logger = logging.getLogger(__name__)

DOUBLETICK_TEMPLATE_ENDPOINT = "https://public.doubletick.io/whatsapp/message/template"


def normalize_destination(to: str) -> str:
    """Digits only; bare 10-digit numbers get the 91 country prefix."""
    digits = "".join(ch for ch in str(to or "") if ch.isdigit())
    if len(digits) == 10:
        return f"91{digits}"
    return digits


class DoubleTickChannel:
    """WhatsApp template sends through DoubleTick."""

    def __init__(
        self,
        api_key: str,
        from_number: str = "",
        *,
        channel_id: str = "doubletick",
        endpoint: str = DOUBLETICK_TEMPLATE_ENDPOINT,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._api_key = api_key
        self._from_number = from_number
        self._channel_id = channel_id
        self._endpoint = endpoint
        self._client = client
        self._timeout = timeout

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def build_payload(
        self,
        to: str,
        template_id: str,
        language: str,
        placeholders: list[str],
        media_url: str | None = None,
        button_url: str | None = None,
    ) -> dict[str, Any]:
        template_data: dict[str, Any] = {
            "body": {"placeholders": ["" if v is None else str(v) for v in placeholders]},
        }
        if media_url:
            template_data["header"] = {"type": "IMAGE", "mediaUrl": media_url}
        if button_url:
            template_data["buttons"] = [{"type": "URL", "parameter": str(button_url)}]

        message: dict[str, Any] = {
            "to": to,
            "content": {
                "templateName": template_id,
                "language": language,
                "templateData": template_data,
            },
        }
        if self._from_number:
            message["from"] = self._from_number
        return {"messages": [message]}

    async def send(
        self,
        recipient: str,
        template_id: str,
        language: str,
        placeholders: list[str],
        media_url: str | None = None,
        button_url: str | None = None,
    ) -> SendResult:
        """Send a template message via DoubleTick."""
        if not self._api_key:
            raise MissingPrecondition("DOUBLETICK_API_KEY not configured")
        if not template_id:
            raise MissingPrecondition("Missing DoubleTick template name")
        to = normalize_destination(recipient)
        if not to:
            raise MissingPrecondition("Missing/invalid destination phone number")

        payload = self.build_payload(to, template_id, language, placeholders, media_url, button_url)
        headers = {"Authorization": self._api_key, "Content-Type": "application/json"}

        try:
            if self._client is not None:
                resp = await self._client.post(self._endpoint, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._endpoint, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise SendError(f"DoubleTick request failed: {type(e).__name__}: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {"raw": resp.text}

        if resp.status_code >= 400:
            raise SendError(
                f"DoubleTick API error: {resp.status_code}",
                status_code=resp.status_code,
                response=body,
            )

        response_id = ""
        if isinstance(body, dict):
            messages = body.get("messages") or []
            if messages and isinstance(messages[0], dict):
                response_id = str(messages[0].get("messageId", ""))

        logger.info("DoubleTick template %s sent to %s", template_id, to[-4:].rjust(len(to), "*"))
        return SendResult(
            channel_id=self._channel_id,
            recipient=to,
            template_id=template_id,
            response_id=response_id,
            response=body if isinstance(body, dict) else {"data": body},
        )
