"""Credential store boundary.

The pipeline reads the access credential at dispatch time, so a request
replayed after a refresh automatically carries the renewed token.
"""

from typing import Protocol

from relay.core.logging import get_logger

logger = get_logger(__name__)


class CredentialStore(Protocol):
    """Where access and refresh credentials live."""

    def get_credential(self) -> str | None:
        ...

    def get_refresh_credential(self) -> str | None:
        ...

    def set_credential(self, token: str, refresh_token: str | None = None) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryCredentialStore:
    """Process-local credential store."""

    def __init__(
        self,
        access_token: str | None = None,
        refresh_token: str | None = None,
    ) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token

    def get_credential(self) -> str | None:
        return self._access_token

    def get_refresh_credential(self) -> str | None:
        return self._refresh_token

    def set_credential(self, token: str, refresh_token: str | None = None) -> None:
        """Store a new access token; keep the refresh token unless replaced."""
        self._access_token = token
        if refresh_token is not None:
            self._refresh_token = refresh_token

    def clear(self) -> None:
        self._access_token = None
        self._refresh_token = None
        logger.debug("Credentials cleared")
