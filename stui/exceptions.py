"""Application-level exception types.

Convention:
- ``DaemonError``: anything that went wrong talking to the sync daemon
  (connection failure, HTTP error status, malformed body).  Workers turn it
  into the ``error`` string of a response; it never crosses a task boundary.
- ``CacheStorageError``: the local cache database failed.  Callers log it and
  treat the operation as a cache miss or no-op.
"""

from __future__ import annotations

import enum

import httpx


class ErrorType(enum.Enum):
    """Coarse classification of daemon failures, used for status display."""

    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    OTHER = "other"


class DaemonError(Exception):
    """Raised when a daemon request fails or returns an unusable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def error_type(self) -> ErrorType:
        return classify_error(self)


class CacheStorageError(Exception):
    """Raised when the local cache database cannot be read or written."""


def classify_error(error: BaseException) -> ErrorType:
    """Classify an error by HTTP status first, then by its message."""
    status_code: int | None = getattr(error, "status_code", None)
    if status_code is None and isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
    if status_code is not None:
        if status_code == 401:
            return ErrorType.UNAUTHORIZED
        if status_code == 404:
            return ErrorType.NOT_FOUND
        if 500 <= status_code <= 599:
            return ErrorType.SERVER_ERROR

    if isinstance(error.__cause__, httpx.TimeoutException):
        return ErrorType.TIMEOUT

    message = format_error_message(error).lower()
    if "connection refused" in message:
        return ErrorType.CONNECTION_REFUSED
    if "timeout" in message or "timed out" in message:
        return ErrorType.TIMEOUT
    if "dns" in message or "network" in message:
        return ErrorType.NETWORK_ERROR
    return ErrorType.OTHER


def format_error_message(error: BaseException) -> str:
    """Return the most informative message in the exception chain.

    An ``httpx`` error anywhere in the chain wins; otherwise the root cause is
    reported.
    """
    current: BaseException | None = error
    while current is not None:
        if isinstance(current, httpx.HTTPError):
            return str(current) or type(current).__name__
        current = current.__cause__ or current.__context__

    deepest = error
    while deepest.__cause__ is not None:
        deepest = deepest.__cause__
    return str(deepest) or type(deepest).__name__
