"""Notification boundary.

Terminal, non-cancelled failures are reported to a Notifier with a
classified, user-readable message. A failed credential refresh triggers a
single sign-out side effect per refresh cycle.
"""

from typing import TYPE_CHECKING, Callable, Protocol

from relay.core.logging import get_logger

from .exceptions import (
    AuthExpiredError,
    BusinessError,
    ConnectionFailedError,
    HTTPStatusError,
    PipelineError,
    RequestTimeoutError,
)

if TYPE_CHECKING:
    from .models import RequestConfig

logger = get_logger(__name__)

DEFAULT_ERROR_MESSAGE = "Network request failed, please check your network"

STATUS_MESSAGES: dict[int, str] = {
    400: "Invalid request parameters (400)",
    401: "Unauthorized (401), please sign in again",
    403: "Access denied (403)",
    404: "Requested resource not found (404)",
    500: "Internal server error (500)",
    502: "Bad gateway (502)",
    503: "Service unavailable (503)",
    504: "Gateway timeout (504)",
}


def describe_error(error: BaseException) -> str:
    """Map an error to the message shown to the user."""
    if isinstance(error, BusinessError):
        return error.message
    if isinstance(error, AuthExpiredError):
        return error.message
    if isinstance(error, HTTPStatusError):
        return STATUS_MESSAGES.get(error.status_code, f"HTTP error: {error.status_code}")
    if isinstance(error, RequestTimeoutError):
        return "Request timed out, please try again later"
    if isinstance(error, ConnectionFailedError):
        return "Network connection error, please check your network settings"
    if isinstance(error, PipelineError) and error.message:
        return error.message
    return DEFAULT_ERROR_MESSAGE


class Notifier(Protocol):
    """User-facing surface for pipeline failures."""

    def notify_error(self, error: PipelineError, config: "RequestConfig") -> None:
        ...

    def on_auth_expired(self) -> None:
        ...


class LoggingNotifier:
    """Notifier that logs failures and delegates sign-out to a callback.

    Args:
        login_route: Route recorded with the sign-out event
        on_sign_out: Optional callable performing the navigation
    """

    def __init__(
        self,
        login_route: str = "/pages/login/login",
        on_sign_out: Callable[[str], None] | None = None,
    ) -> None:
        self.login_route = login_route
        self._on_sign_out = on_sign_out

    def notify_error(self, error: PipelineError, config: "RequestConfig") -> None:
        logger.error(
            "Request failed",
            message=describe_error(error),
            error_code=error.error_code,
            status_code=error.status_code,
            method=config.method,
            url=config.url,
        )

    def on_auth_expired(self) -> None:
        logger.warning("Session expired, signing out", login_route=self.login_route)
        if self._on_sign_out is not None:
            self._on_sign_out(self.login_route)
