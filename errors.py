"""
Error taxonomy shared by the request handlers and the upstream client.

``ApiError`` subclasses are raised by handlers and rendered as
``{"error": ..., "message": ...}`` JSON by the exception handler registered in
``main.py``. ``UpstreamError`` subclasses are raised by the upstream client and
carry an ``ErrorKind`` so callers never have to inspect message text.
"""

import asyncio
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    """Classification of an upstream failure."""

    timeout = "timeout"
    auth = "auth"
    unknown = "unknown"


class ApiError(Exception):
    """Base class for errors that map directly onto an HTTP response."""

    status_code = 500

    def __init__(self, error: str, message: str | None = None) -> None:
        self.error = error
        self.message = message or error
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message}


class ValidationError(ApiError):
    status_code = 400


class ConfigurationError(ApiError):
    status_code = 500


class NotFoundError(ApiError):
    status_code = 404


class PayloadTooLargeError(ApiError):
    status_code = 413


class StaticAssetError(ApiError):
    """The bundled single-page app could not be served."""

    status_code = 500


class UpstreamError(Exception):
    """Raised when the generative provider call fails."""

    kind = ErrorKind.unknown

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class UpstreamTimeoutError(UpstreamError):
    kind = ErrorKind.timeout


class UpstreamAuthError(UpstreamError):
    kind = ErrorKind.auth


def classify_error(exc: BaseException) -> ErrorKind:
    """Return the ``ErrorKind`` for an exception raised during generation.

    Typed upstream errors carry their own kind. Anything else is matched on
    its message text, which keeps third-party exceptions that only say
    "timed out" or mention an "API key" in the right bucket.
    """
    if isinstance(exc, UpstreamError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorKind.timeout
    message = str(exc)
    if "timed out" in message:
        return ErrorKind.timeout
    if "API key" in message:
        return ErrorKind.auth
    return ErrorKind.unknown
