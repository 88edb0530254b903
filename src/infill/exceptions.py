"""Infill exception hierarchy.

Provides a structured exception tree so callers can tell a server that
cannot be reached apart from one that answered with an error, and a
cancelled request apart from one that ran out of retries.
"""

from __future__ import annotations


class InfillError(Exception):
    """Base for all Infill exceptions."""


class BackendError(InfillError):
    """Inference server transport and protocol failures."""


class BackendConnectionError(BackendError):
    """Raised when the inference server cannot be reached.

    Wraps the underlying httpx/transport error and preserves it for
    debugging.
    """

    def __init__(self, message: str, original: Exception | None = None):
        super().__init__(message)
        self.original = original


class BackendTimeoutError(BackendConnectionError):
    """Raised when a request to the inference server timed out."""


class BackendHTTPError(BackendError):
    """Raised when the inference server answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body

    @property
    def is_server_error(self) -> bool:
        return 500 <= self.status_code < 600


class UnsupportedOperationError(BackendError):
    """Raised when a backend does not implement an optional operation."""


class OperationCancelledError(InfillError):
    """Raised when a cancellation token fires before an operation finished."""


class RetryExhaustedError(InfillError):
    """Raised when every retry attempt failed.

    ``last_error`` holds the failure of the final attempt.
    """

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
