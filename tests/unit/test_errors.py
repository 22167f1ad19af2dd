"""
Unit tests for SDK error types.

Tests cover:
- Hierarchy and codes
- Context carried in details
"""

import pytest

from sdk.appatonce_sdk.errors import (
    AppAtOnceError,
    AuthenticationError,
    ServerError,
    SubscriptionError,
    TransportError,
    UnknownFieldError,
    ValidationError,
)


class TestErrors:
    """Tests for the error taxonomy."""

    @pytest.mark.parametrize(
        "error, code",
        [
            (ValidationError("bad"), "VALIDATION_ERROR"),
            (UnknownFieldError("nme", "users"), "UNKNOWN_FIELD"),
            (TransportError("down"), "TRANSPORT_ERROR"),
            (AuthenticationError("denied"), "AUTHENTICATION_ERROR"),
            (SubscriptionError("rejected", table="t"), "SUBSCRIPTION_ERROR"),
            (ServerError("missing", status_code=404), "HTTP_404"),
        ],
    )
    def test_codes(self, error, code):
        """Every error has a stable code and inherits from AppAtOnceError."""
        assert isinstance(error, AppAtOnceError)
        assert error.code == code

    def test_base_default_code(self):
        """The base error has a generic code."""
        assert AppAtOnceError("x").code == "APPATONCE_ERROR"

    def test_validation_details(self):
        """ValidationError names the field and operator."""
        error = ValidationError("in needs a list", field_name="x", operator="in", errors=["a", "b"])

        assert error.details == {"field": "x", "operator": "in", "errors": ["a", "b"]}
        assert str(error) == "in needs a list"

    def test_unknown_field_is_validation_error(self):
        """UnknownFieldError is a ValidationError with suggestions."""
        error = UnknownFieldError("stauts", "users", ["status"])

        assert isinstance(error, ValidationError)
        assert "Did you mean: status?" in error.message
        assert error.details["suggestions"] == ["status"]
        assert error.details["table"] == "users"

    def test_transport_details(self):
        """TransportError carries address and reason."""
        error = TransportError("down", address="https://x", reason="ConnectError")

        assert error.details == {"address": "https://x", "reason": "ConnectError"}

    def test_subscription_events_sorted(self):
        """SubscriptionError lists events in a stable order."""
        error = SubscriptionError("nope", table="orders", events=["UPDATE", "INSERT"])

        assert error.events == ["INSERT", "UPDATE"]
        assert error.details["table"] == "orders"

    def test_server_error_code_override(self):
        """A server-supplied code replaces the HTTP code."""
        error = ServerError("denied", status_code=403, code="FORBIDDEN", body={"message": "denied"})

        assert error.code == "FORBIDDEN"
        assert error.status_code == 403
        assert error.body == {"message": "denied"}
