"""
Unit tests for custom exceptions.

Tests the exception hierarchy to ensure proper error handling
and cause tracking.
"""

import pytest

from http_multicall.calls import CallState
from http_multicall.exceptions import (
    EmptyBodyError,
    HTTPCallError,
    HttpResponseError,
    InvalidStateTransition,
    MalformedResponseError,
    MultiplexerError,
    TransferError,
    UnsupportedRequestObjectError,
    describe_status,
)


class TestHTTPCallError:
    """Test base HTTPCallError class."""

    def test_basic_creation(self) -> None:
        """Test creating basic HTTPCallError."""
        error = HTTPCallError("Test error message")
        assert str(error) == "Test error message"
        assert error.message == "Test error message"
        assert error.cause is None

    def test_with_cause(self) -> None:
        """Test creating HTTPCallError with cause."""
        original_error = ValueError("Original error")
        error = HTTPCallError("Test error message", cause=original_error)
        assert error.cause is original_error

    @pytest.mark.parametrize(
        "error",
        [
            InvalidStateTransition(CallState.CREATED, CallState.COMPLETED),
            TransferError("boom", 7),
            HttpResponseError(500, "Internal Server Error"),
            MalformedResponseError("Syntax error"),
            EmptyBodyError(),
            UnsupportedRequestObjectError(42),
            MultiplexerError(4),
        ],
    )
    def test_hierarchy(self, error: HTTPCallError) -> None:
        """Test every error derives from the base class."""
        assert isinstance(error, HTTPCallError)


class TestInvalidStateTransition:
    """Test InvalidStateTransition class."""

    def test_names_source_and_target(self) -> None:
        """Test the message names both states by title."""
        error = InvalidStateTransition(CallState.CREATED, CallState.COMPLETED)
        assert str(error) == "Cannot get to Completed from Created"
        assert error.source is CallState.CREATED
        assert error.target is CallState.COMPLETED


class TestTransferError:
    """Test TransferError class."""

    def test_carries_code(self) -> None:
        """Test the transfer error code is kept."""
        error = TransferError("Could not resolve host: nowhere", 6)
        assert error.code == 6
        assert "Transfer error: Could not resolve host: nowhere" in str(error)
        assert "(code 6)" in str(error)


class TestHttpResponseError:
    """Test HttpResponseError class."""

    def test_with_reason_phrase(self) -> None:
        """Test the reason phrase is used when present."""
        error = HttpResponseError(503, "Service Unavailable")
        assert error.status_code == 503
        assert error.reason_phrase == "Service Unavailable"
        assert str(error) == "HTTP status 503: Service Unavailable"

    def test_empty_reason_phrase(self) -> None:
        """Test a generic description is derived from the code."""
        error = HttpResponseError(404, "")
        assert error.reason_phrase == ""
        assert str(error) == "HTTP status 404 (Not Found)"

    def test_unknown_code(self) -> None:
        """Test codes without a standard phrase."""
        assert describe_status(499) == "HTTP status 499"


class TestMalformedResponseError:
    """Test MalformedResponseError class."""

    def test_category(self) -> None:
        """Test the category and content type appear in the message."""
        cause = ValueError("bad")
        error = MalformedResponseError("Syntax error", "JSON", cause)
        assert error.category == "Syntax error"
        assert error.cause is cause
        assert str(error) == "Response body does not have proper JSON format (Syntax error)"


class TestOtherErrors:
    """Test the remaining error classes."""

    def test_empty_body(self) -> None:
        """Test EmptyBodyError names the expected content."""
        assert "XML" in str(EmptyBodyError("XML"))

    def test_unsupported_request_object(self) -> None:
        """Test the offending type is named."""
        error = UnsupportedRequestObjectError("http://example.com")
        assert error.request_object == "http://example.com"
        assert "str" in str(error)

    def test_multiplexer_error(self) -> None:
        """Test the status is kept."""
        error = MultiplexerError(4)
        assert error.status == 4
        assert "status 4" in str(error)
