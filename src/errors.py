"""Exception types shared by the relay components."""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base class for relay failures."""


class MissingPrecondition(RelayError):
    """An attempt cannot proceed (no recipient, missing config).

    The attempt is abandoned without marking anything processed.
    """


class SendError(RelayError):
    """The messaging provider rejected the send or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response
