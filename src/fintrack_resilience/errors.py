"""Shared error types for fintrack_resilience.

Every failure seen by the resilience layer is one of a closed set of variants
built once, at the transport boundary. Callers branch on the class (or on
``kind``) instead of probing response attributes.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Classification tag carried by every resilience error."""

    NETWORK = "network_error"
    TIMEOUT = "timeout"
    SERVER = "server_error"
    RATE_LIMITED = "rate_limited"
    CLIENT = "client_error"
    UNAUTHORIZED = "unauthorized"
    BREAKER_OPEN = "circuit_breaker_open"
    REFRESH_EXHAUSTED = "refresh_exhausted"
    QUEUE_EVICTED = "queue_evicted"
    QUEUE_DISCARDED = "queue_discarded"


class ResilienceError(RuntimeError):
    """Base exception for the resilience layer."""

    kind: ErrorKind = ErrorKind.NETWORK


class TransientError(ResilienceError):
    """Generic retry-safe transient dependency failure."""


class TransportError(TransientError):
    """Raised when no response was received (network failure or timeout)."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.NETWORK,
        method: str | None = None,
        url: str | None = None,
    ) -> None:
        """Initialize transport-error metadata.

        Args:
            message: Human-readable error message.
            kind: Either ``NETWORK`` or ``TIMEOUT``.
            method: HTTP method of the failed request, when known.
            url: Target URL of the failed request, when known.
        """
        super().__init__(message)
        self.kind = kind
        self.method = method
        self.url = url


class OfflineError(TransportError):
    """Raised when a call is attempted while connectivity is absent."""

    def __init__(self, *, method: str | None = None, url: str | None = None) -> None:
        super().__init__(
            "Connectivity is unavailable.",
            kind=ErrorKind.NETWORK,
            method=method,
            url=url,
        )


class HTTPStatusError(ResilienceError):
    """Base exception for failures that carry an HTTP response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        response_body: str | None = None,
        method: str | None = None,
        url: str | None = None,
    ) -> None:
        """Initialize response-error metadata.

        Args:
            message: Human-readable error message.
            status_code: HTTP status observed from the server.
            response_body: Optional response payload text.
            method: HTTP method of the failed request, when known.
            url: Target URL of the failed request, when known.
        """
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.method = method
        self.url = url


class ServerError(HTTPStatusError, TransientError):
    """Raised for HTTP 5xx responses."""

    kind = ErrorKind.SERVER


class RateLimited(HTTPStatusError, TransientError):
    """Raised for HTTP 429 responses.

    Attributes:
        retry_after: Seconds requested by the ``Retry-After`` header, if any.
    """

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 429,
        response_body: str | None = None,
        method: str | None = None,
        url: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(
            message,
            status_code=status_code,
            response_body=response_body,
            method=method,
            url=url,
        )
        self.retry_after = retry_after


class ClientError(HTTPStatusError):
    """Raised for 4xx responses other than 401 and 429. Never retried."""

    kind = ErrorKind.CLIENT


class Unauthorized(HTTPStatusError):
    """Raised for HTTP 401 responses."""

    kind = ErrorKind.UNAUTHORIZED


class RefreshExhaustedError(ResilienceError):
    """Raised when the session could not be refreshed and was logged out."""

    kind = ErrorKind.REFRESH_EXHAUSTED


class QueueEvictedError(ResilienceError):
    """Raised on a queued request's outcome when it is evicted at capacity."""

    kind = ErrorKind.QUEUE_EVICTED

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"queued request {request_id} evicted at capacity")


class QueueDiscardedError(ResilienceError):
    """Raised on a queued request's outcome when it is removed or the queue is
    cleared before replay."""

    kind = ErrorKind.QUEUE_DISCARDED

    def __init__(self, request_id: str, reason: str) -> None:
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"queued request {request_id} discarded: {reason}")


def is_connectivity_related(error: BaseException) -> bool:
    """Return true when a failure may clear up once connectivity recovers."""
    return isinstance(error, (TransportError, ServerError, RateLimited))
