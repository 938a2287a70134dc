"""
Custom exceptions for the live market data core.

Exception hierarchy:
- LiveFeedError (base)
  - TransportError: socket / long-poll transport failures
  - SubscriptionError: invalid subscription requests
  - MessageParseError: invalid/malformed gateway frames or payloads
  - ConfigurationError: invalid configuration
  - RateLimitError: gateway asked us to back off
  - HistoryError: historical bar fetch failures
  - ChartError: chart lifecycle misuse (programmer errors)
"""

from __future__ import annotations

from typing import Any, Optional


class LiveFeedError(Exception):
    """Base exception for all live feed errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class TransportError(LiveFeedError):
    """Raised when a transport cannot be opened or is lost."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        transport: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.transport = transport
        details = details or {}
        if url:
            details["url"] = url
        if transport:
            details["transport"] = transport
        super().__init__(message, component=component, details=details)


class SubscriptionError(LiveFeedError):
    """Raised when a subscription request is invalid."""

    def __init__(
        self,
        message: str,
        *,
        symbol: Optional[str] = None,
        kind: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.symbol = symbol
        self.kind = kind
        details = details or {}
        if symbol:
            details["symbol"] = symbol
        if kind:
            details["kind"] = kind
        super().__init__(message, component=component, details=details)


class MessageParseError(LiveFeedError):
    """Raised when a frame or payload cannot be parsed."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[str] = None,
        expected_type: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.raw_data = raw_data
        self.expected_type = expected_type
        details = details or {}
        if expected_type:
            details["expected_type"] = expected_type
        # raw_data stays off the details to keep log lines short
        super().__init__(message, component=component, details=details)


class ConfigurationError(LiveFeedError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)


class RateLimitError(LiveFeedError):
    """Raised when the gateway reports that we are rate limited."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.code = code
        details = details or {}
        if code:
            details["code"] = code
        super().__init__(message, component=component, details=details)


class HistoryError(LiveFeedError):
    """Raised inside the history loader when a bar fetch fails."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        url: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status = status
        self.url = url
        details = details or {}
        if status is not None:
            details["status"] = status
        if url:
            details["url"] = url
        super().__init__(message, component=component, details=details)


class ChartError(LiveFeedError):
    """Raised when the chart lifecycle is misused."""
