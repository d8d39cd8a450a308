"""Errors raised by realtime event handlers."""

from __future__ import annotations


class RealtimeError(Exception):
    """Base class for errors reported back to the acting connection."""

    default_detail = "Realtime event failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFoundError(RealtimeError):
    """A referenced chat, message or user does not exist."""

    default_detail = "Not found"


class UnauthorizedError(RealtimeError):
    """The connection's user may not act on the referenced resource."""

    default_detail = "Not allowed"


class InvalidPayloadError(RealtimeError):
    """The event payload is missing fields or has values of the wrong type."""

    default_detail = "Invalid payload"
