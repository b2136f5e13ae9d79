"""Transport boundary and the httpx-backed implementation.

The pipeline never talks to the network directly. It hands a fully
resolved request to a Transport, which performs exactly one round trip and
returns an Outcome, or raises:

- ConnectionFailedError  network failure (retryable)
- RequestTimeoutError    timeout (retryable)
- RequestCancelledError  the token was cancelled before or during the call

Status codes are not interpreted here; validation is the pipeline's job.
"""

import asyncio
from typing import Any, Awaitable, Protocol

import httpx

from relay.core.logging import get_logger

from .cancellation import CancellationToken
from .exceptions import ConnectionFailedError, RequestTimeoutError
from .models import Outcome

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 10.0


class Transport(Protocol):
    """Performs one request and reports what came back."""

    async def dispatch(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout: float | None = None,
        cancellation: CancellationToken | None = None,
    ) -> Outcome:
        ...


class HttpxTransport:
    """Transport over httpx.AsyncClient with best-effort abort.

    Usage:
        async with HttpxTransport("https://api.example.com") as transport:
            outcome = await transport.dispatch("GET", "/ping", headers={})
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize transport.

        Args:
            base_url: Base URL for relative request targets
            timeout: Default per-attempt timeout in seconds
            transport: Optional httpx transport (e.g. httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def connect(self) -> None:
        """Open the HTTP client ahead of the first request."""
        await self._get_client()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpxTransport":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def dispatch(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout: float | None = None,
        cancellation: CancellationToken | None = None,
    ) -> Outcome:
        """Perform one request.

        Raises:
            RequestCancelledError: Token cancelled before or during the call
            RequestTimeoutError: Request timed out
            ConnectionFailedError: Network failure
        """
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        client = await self._get_client()
        request_timeout = timeout or self.timeout
        call = client.request(
            method,
            url,
            headers=headers,
            params=params,
            json=json,
            timeout=request_timeout,
        )

        try:
            if cancellation is None:
                response = await call
            else:
                response = await self._until_cancelled(call, cancellation)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(
                f"Request timed out after {request_timeout}s: {method} {url}"
            ) from e
        except httpx.TransportError as e:
            raise ConnectionFailedError(f"Network request failed: {e}") from e

        return Outcome(
            status=response.status_code,
            body=self._decode(response),
            headers=dict(response.headers),
        )

    async def _until_cancelled(
        self,
        call: Awaitable[httpx.Response],
        token: CancellationToken,
    ) -> httpx.Response:
        """Await the call, aborting it if the token is cancelled first."""
        request = asyncio.ensure_future(call)
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {request, cancelled},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
            if not request.done() and not token.cancelled:
                request.cancel()

        if request in done:
            return request.result()

        request.cancel()
        await asyncio.wait({request})
        logger.debug("Transport call aborted", reason=token.reason)
        raise token.error()

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
