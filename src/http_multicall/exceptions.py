"""
Custom exceptions for http_multicall.

This module defines the exception hierarchy used throughout
the library for error handling and debugging.
"""

from http import HTTPStatus
from typing import Any, Optional


class HTTPCallError(Exception):
    """Base exception for all http_multicall errors."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class InvalidStateTransition(HTTPCallError):
    """Raised when a call lifecycle method is invoked out of order."""

    def __init__(self, source: Any, target: Any) -> None:
        self.source = source
        self.target = target
        super().__init__(
            f"Cannot get to {_state_title(target)} from {_state_title(source)}"
        )


class TransferError(HTTPCallError):
    """Raised when a transfer failed to produce any response."""

    def __init__(
        self,
        message: str,
        code: int = 0,
        cause: Optional[Exception] = None,
    ) -> None:
        self.code = int(code)
        super().__init__(f"Transfer error: {message} (code {self.code})", cause)


class HttpResponseError(HTTPCallError):
    """
    Raised when a transfer succeeded but the server answered with
    a status code in the error range.
    """

    def __init__(self, status_code: int, reason_phrase: Optional[str] = None) -> None:
        self.status_code = status_code
        self.reason_phrase = reason_phrase or ""

        if self.reason_phrase:
            message = f"HTTP status {status_code}: {self.reason_phrase}"
        else:
            message = describe_status(status_code)

        super().__init__(message)


class MalformedResponseError(HTTPCallError):
    """Raised when a non-empty body cannot be decoded as the expected content."""

    def __init__(
        self,
        category: str,
        content_type: str = "JSON",
        cause: Optional[Exception] = None,
    ) -> None:
        self.category = category
        self.content_type = content_type
        super().__init__(
            f"Response body does not have proper {content_type} format ({category})",
            cause,
        )


class EmptyBodyError(HTTPCallError):
    """Raised when structured content was expected but the body was empty."""

    def __init__(self, content_type: str = "JSON") -> None:
        self.content_type = content_type
        super().__init__(f"Expected {content_type} response but body was empty")


class UnsupportedRequestObjectError(HTTPCallError):
    """Raised when a multi-call is given an input of an unknown kind."""

    def __init__(self, request_object: Any) -> None:
        self.request_object = request_object
        super().__init__(
            f"Unexpected request object of type {type(request_object).__name__}"
        )


class MultiplexerError(HTTPCallError):
    """Raised when the multiplexer itself reports a fatal status."""

    def __init__(self, status: int) -> None:
        self.status = int(status)
        super().__init__(f"Multiplexer error: status {self.status}")


def describe_status(status_code: int) -> str:
    """Generic description of an HTTP status code."""
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        return f"HTTP status {status_code}"
    return f"HTTP status {status_code} ({phrase})"


def _state_title(state: Any) -> str:
    return getattr(state, "title", str(state))
