"""Custom exception types for stocksync."""

from __future__ import annotations

from typing import Optional


class StockSyncError(Exception):
    """Base error carrying optional portal/url/record context."""

    default_message = "Portal sync failed."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        url: Optional[str] = None,
        portal: Optional[str] = None,
        record: Optional[str] = None,
        signal: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> None:
        self.message = message or self.default_message
        self.url = url
        self.portal = portal
        self.record = record
        self.signal = signal
        self.attempt = attempt
        super().__init__(self.message)

    def __str__(self) -> str:
        context_parts: list[str] = []
        if self.portal:
            context_parts.append(f"portal={self.portal}")
        if self.record:
            context_parts.append(f"record={self.record}")
        if self.url:
            context_parts.append(f"url={self.url}")
        if self.signal:
            context_parts.append(f"signal={self.signal}")
        if self.attempt is not None:
            context_parts.append(f"attempt={self.attempt}")
        context = ", ".join(context_parts)
        return f"{self.message} ({context})" if context else self.message


class ConfigError(StockSyncError):
    """Raised when configuration is missing or invalid at startup."""

    default_message = "Invalid configuration."


class RetryableError(StockSyncError):
    """Transient portal failure; callers may retry with backoff."""


class NavigationTimeout(RetryableError):
    """Raised when no navigation completion signal succeeded."""

    default_message = "Navigation did not complete."


class ContentTimeout(RetryableError):
    """Raised when the page content container never rendered."""

    default_message = "Page content did not render in time."


class SessionExpired(RetryableError):
    """Raised when the portal redirected to its login page."""

    default_message = "Portal session expired (redirected to login)."


class LoginError(StockSyncError):
    """Raised when the portal rejects the configured credentials."""

    default_message = "Portal login failed."


class ElementNotFound(StockSyncError):
    """Raised when an element required for an interaction is missing."""

    default_message = "Element not found."


class ParsingError(StockSyncError):
    """Raised when a detail page cannot be turned into a record."""

    default_message = "Failed to parse portal content."


class LedgerApplicationError(StockSyncError):
    """Raised when a record's line items cannot be applied to inventory."""

    default_message = "Failed to apply record to inventory."


class SyncAlreadyRunning(StockSyncError):
    """Raised when a sync is requested while another one is in progress."""

    default_message = "Sync already in progress."


class RunCancelled(StockSyncError):
    """Raised inside a run once its cancel token has been tripped."""

    default_message = "Run cancelled by operator."
