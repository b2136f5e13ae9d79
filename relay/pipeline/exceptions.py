"""Request pipeline exceptions.

Defines typed exceptions for every way a submission can end, so that the
pipeline can classify failures (cancelled, auth, retryable, terminal) and
callers can handle them precisely.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import Outcome


class TransportErrorKind(str, Enum):
    """Failure kinds reported by the transport."""

    NETWORK = "network"
    TIMEOUT = "timeout"


class PipelineError(Exception):
    """Base exception for all request pipeline errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        self.request_id = request_id

    def __str__(self) -> str:
        parts = [self.message]
        if self.error_code:
            parts.append(f"[{self.error_code}]")
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " ".join(parts)


class RequestCancelledError(PipelineError):
    """Request was cancelled (scope invalidated or explicit abort).

    Never retried, never routed to credential refresh, never surfaced
    to the user as a failure.
    """

    def __init__(
        self,
        message: str = "Request cancelled",
        request_id: str | None = None,
    ) -> None:
        super().__init__(message, error_code="CANCELLED", request_id=request_id)


class RequestSupersededError(RequestCancelledError):
    """A newer submission for the same debounce key replaced this one."""

    def __init__(
        self,
        key: str | None = None,
        request_id: str | None = None,
    ) -> None:
        message = f"Superseded by a newer request for {key}" if key else "Superseded"
        super().__init__(message, request_id=request_id)
        self.error_code = "SUPERSEDED"
        self.key = key


class TransportError(PipelineError):
    """The transport could not complete the round trip.

    Retryable with backoff.
    """

    kind: TransportErrorKind = TransportErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code=f"ERR_{self.kind.value.upper()}",
            request_id=request_id,
        )


class ConnectionFailedError(TransportError):
    """Network failure: connection refused, reset, DNS error."""

    kind = TransportErrorKind.NETWORK

    def __init__(
        self,
        message: str = "Network connection failed",
        request_id: str | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id)


class RequestTimeoutError(TransportError):
    """The request did not complete within its timeout."""

    kind = TransportErrorKind.TIMEOUT

    def __init__(
        self,
        message: str = "Request timed out",
        request_id: str | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id)


class HTTPStatusError(PipelineError):
    """The server answered with a status outside the accepted range."""

    def __init__(
        self,
        message: str,
        outcome: "Outcome",
        error_code: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            status_code=outcome.status,
            error_code=error_code,
            request_id=request_id,
        )
        self.outcome = outcome


class ServerError(HTTPStatusError):
    """Server error (5xx).

    Retryable with backoff.
    """


class ClientError(HTTPStatusError):
    """Client error (4xx or other rejected status).

    Do not retry - fix the request.
    """


class AuthenticationError(ClientError):
    """Authorization failure (HTTP 401 or business code 401).

    Routed to the credential refresh coordinator unless the request is
    itself the renewal call.
    """

    def __init__(
        self,
        outcome: "Outcome",
        message: str = "Authentication failed",
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            outcome,
            error_code="UNAUTHORIZED",
            request_id=request_id,
        )


class AuthExpiredError(PipelineError):
    """Credentials could not be renewed.

    Terminal. The user must sign in again.
    """

    def __init__(
        self,
        message: str = "Session expired, please sign in again",
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            status_code=401,
            error_code="AUTH_EXPIRED",
            request_id=request_id,
        )


class BusinessError(PipelineError):
    """Transport succeeded but the application rejected the request.

    Terminal. Carries the server-provided message.
    """

    def __init__(
        self,
        message: str,
        outcome: "Outcome",
        business_code: Any = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            status_code=outcome.status,
            error_code=str(business_code) if business_code is not None else "BUSINESS_ERROR",
            request_id=request_id,
        )
        self.outcome = outcome
        self.business_code = business_code


def is_cancellation(error: BaseException) -> bool:
    """Return True for cancelled and superseded outcomes."""
    return isinstance(error, RequestCancelledError)
