"""Messaging channel protocol — template sends to a customer's phone.

Design:
- A channel exposes one operation: send(recipient, template_id, language,
  placeholders, media_url=None, button_url=None) -> SendResult
- Provider or transport failures raise SendError; callers decide whether the
  attempt is retried (scheduled actions) or dropped (direct dispatch)
- Credentials come from Settings, never hardcoded or logged
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class SendResult:
    """Result of an accepted send."""
    channel_id: str
    recipient: str
    template_id: str
    response_id: str = ""  # Provider message ID, when returned
    response: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class MessagingChannel(Protocol):
    """Protocol for template-message channels."""

    @property
    def channel_id(self) -> str:
        """Unique identifier for this channel."""
        ...

    @property
    def is_configured(self) -> bool:
        """Whether this channel has valid credentials configured."""
        ...

    async def send(
        self,
        recipient: str,
        template_id: str,
        language: str,
        placeholders: list[str],
        media_url: str | None = None,
        button_url: str | None = None,
    ) -> SendResult:
        """Send a template message. Raises SendError on failure."""
        ...
