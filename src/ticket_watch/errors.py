"""Exception hierarchy for the ticket watcher."""

from __future__ import annotations


class TicketWatchError(Exception):
    """Base class for all ticket watcher errors."""


class FetchError(TicketWatchError):
    """Upstream page could not be retrieved (network, timeout, status, envelope)."""

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class NotificationError(TicketWatchError):
    """A notification channel failed to deliver a message."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class ConfigurationError(TicketWatchError):
    """A channel was requested but its credentials are not configured."""
