"""
Exceptions and Error Reporting

Every failure raised by redis_feed derives from FeedError. Serialization
and cancellation failures are never raised across the public API; they go
to an ErrorReporter instead, which only logs.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Base exception for all redis_feed errors."""

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class BrokerConnectionError(FeedError):
    """Raised when the broker is unreachable or the connection drops."""

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        if address:
            ctx["address"] = address
        super().__init__(message, ctx)
        self.address = address


class PubSubError(FeedError):
    """Raised when the pub/sub manager is used outside its lifecycle."""


class SubscriptionError(PubSubError):
    """Raised when a subscribe call cannot reach the broker."""

    def __init__(
        self,
        message: str,
        target: str,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        ctx["target"] = target
        super().__init__(message, ctx)
        self.target = target


class SerializationError(FeedError):
    """Raised (internally) when a value cannot be encoded or decoded."""


class DecodeError(SerializationError):
    """Wire data is malformed for the requested type."""

    def __init__(
        self,
        message: str,
        data: Any = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        if data is not None:
            ctx["data"] = repr(data)[:100]  # Truncate long payloads
        super().__init__(message, ctx)
        self.data = data


class TypeMismatchError(SerializationError):
    """Decoded value is not an instance of the requested type."""

    def __init__(
        self,
        expected: type,
        actual: type,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        ctx["expected"] = getattr(expected, "__name__", repr(expected))
        ctx["actual"] = getattr(actual, "__name__", repr(actual))
        super().__init__("Decoded value has the wrong type", ctx)
        self.expected = expected
        self.actual = actual


class ErrorReporter:
    """
    Sink for (operation, error) pairs raised inside redis_feed.

    Used for observability only. Subclass and override report() to route
    errors elsewhere; the default writes one ERROR record per call.
    """

    def __init__(self, subsystem: str = "Redis", log: logging.Logger | None = None) -> None:
        self._subsystem = subsystem
        self._log = log or logger

    def report(self, operation: str, error: BaseException | str) -> None:
        detail = error if isinstance(error, str) else (str(error) or type(error).__name__)
        exc_info = error if isinstance(error, BaseException) else None
        self._log.error(
            "%s error during %s: %s",
            self._subsystem,
            operation,
            detail,
            exc_info=exc_info,
        )


default_reporter = ErrorReporter()
