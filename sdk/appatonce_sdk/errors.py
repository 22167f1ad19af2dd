"""
Error types for the AppAtOnce SDK.

This module defines all exception types raised by the SDK:
- AppAtOnceError: Base exception
- ValidationError: Malformed query or filter, raised before any I/O
- UnknownFieldError: Field name not present in a known column set
- TransportError: Network or connection failure
- AuthenticationError: API key rejected during the realtime handshake
- SubscriptionError: Server rejected (or dropped) one subscription
- ServerError: Non-2xx HTTP response

Invariants:
    - All errors inherit from AppAtOnceError
    - Errors include context for debugging
    - The API key never appears in messages or details
"""

from __future__ import annotations

from typing import Any, Iterable


class AppAtOnceError(Exception):
    """Base exception for all AppAtOnce SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "APPATONCE_ERROR"
        self.details = details or {}


class ValidationError(AppAtOnceError):
    """Query request validation failed.

    Raised when:
    - A field name breaks the identifier grammar
    - An operator gets the wrong value shape (e.g. ``in`` with a scalar)
    - A filter group is empty
    - limit/offset are not non-negative integers
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        operator: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "operator": operator, "errors": errors or []},
        )
        self.field_name = field_name
        self.operator = operator
        self.errors = errors or []


class UnknownFieldError(ValidationError):
    """Unknown field referenced by a query.

    Includes suggestions for similar column names.

    Attributes:
        field_name: The unknown field
        table: The table being queried
        suggestions: Similar field names
    """

    def __init__(
        self,
        field_name: str,
        table: str,
        suggestions: list[str] | None = None,
    ) -> None:
        suggestions = suggestions or []
        msg = f"Unknown field '{field_name}' in table '{table}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"

        super().__init__(msg, field_name=field_name)
        self.code = "UNKNOWN_FIELD"
        self.details.update({"table": table, "suggestions": suggestions})
        self.table = table
        self.suggestions = suggestions


class TransportError(AppAtOnceError):
    """Network or connection failure.

    Raised when:
    - The server is unreachable or the request times out
    - The realtime connection drops and cannot be re-established
    """

    def __init__(
        self,
        message: str,
        address: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"address": address, "reason": reason},
        )
        self.address = address
        self.reason = reason


class AuthenticationError(AppAtOnceError):
    """The server rejected the API key during the realtime handshake.

    Fatal: the realtime manager does not retry after this error.
    """

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(
            message,
            code="AUTHENTICATION_ERROR",
            details={"address": address},
        )
        self.address = address


class SubscriptionError(AppAtOnceError):
    """A single table subscription was rejected, timed out or dropped.

    Scoped to that subscription; the connection stays up.
    """

    def __init__(
        self,
        message: str,
        table: str,
        events: Iterable[str] | None = None,
    ) -> None:
        event_list = sorted(events or [])
        super().__init__(
            message,
            code="SUBSCRIPTION_ERROR",
            details={"table": table, "events": event_list},
        )
        self.table = table
        self.events = event_list


class ServerError(AppAtOnceError):
    """The REST API answered with a non-2xx status.

    Attributes:
        status_code: HTTP status
        body: Decoded response body (JSON value or text)
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        code: str | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(
            message,
            code=code or f"HTTP_{status_code}",
            details={"status_code": status_code, "body": body},
        )
        self.status_code = status_code
        self.body = body
