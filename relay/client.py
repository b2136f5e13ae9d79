"""Relay HTTP client.

High-level async client that owns an httpx transport, a credential store
and a RequestPipeline, and exposes verb helpers on top of it.
"""

from typing import Any

import httpx

from relay.core.config import Settings, get_settings
from relay.core.logging import get_logger
from relay.pipeline import (
    CancellationSource,
    CredentialStore,
    HttpxTransport,
    InMemoryCredentialStore,
    Notifier,
    Outcome,
    RequestConfig,
    RequestPipeline,
)

logger = get_logger(__name__)


class RelayClient:
    """Async client routing every call through the request pipeline.

    Usage:
        async with RelayClient() as client:
            outcome = await client.get("/orders", params={"page": 1})
            await client.post("/orders", json={"sku": "A-1"}, priority=Priority.HIGH)

    Or manually manage lifecycle:
        client = RelayClient(base_url)
        await client.connect()
        try:
            outcome = await client.get("/me")
        finally:
            await client.close()

    Keyword options accepted by the verb helpers are RequestConfig fields
    (params, json, headers, key, priority, debounce_window,
    throttle_window, retry_budget, retry_delay, cancellation, timeout,
    authenticated, notify_errors).
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        credentials: CredentialStore | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: API base URL (defaults to settings.api_base_url)
            credentials: Credential store (defaults to in-memory)
            notifier: Notification surface (defaults to logging)
            settings: Settings (defaults to get_settings())
            transport: Optional httpx transport, e.g. httpx.MockTransport
        """
        self.settings = settings or get_settings()
        self.base_url = (base_url or self.settings.api_base_url).rstrip("/")
        self.credentials = credentials or InMemoryCredentialStore()

        self._http = HttpxTransport(
            self.base_url,
            self.settings.request_timeout,
            transport=transport,
        )
        self.pipeline = RequestPipeline(
            self._http,
            self.credentials,
            notifier=notifier,
            settings=self.settings,
        )

    async def connect(self) -> None:
        """Open the underlying HTTP client."""
        await self._http.connect()
        logger.info("Relay client connected", base_url=self.base_url)

    async def close(self) -> None:
        """Stop the pipeline and close the HTTP client."""
        await self.pipeline.aclose()
        await self._http.close()
        logger.info("Relay client closed")

    async def __aenter__(self) -> "RelayClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def request(self, method: str, url: str, **options: Any) -> Outcome:
        """Send a request through the pipeline."""
        config = RequestConfig(method=method, url=url, **options)
        return await self.pipeline.request(config)

    async def get(self, url: str, **options: Any) -> Outcome:
        return await self.request("GET", url, **options)

    async def post(self, url: str, **options: Any) -> Outcome:
        return await self.request("POST", url, **options)

    async def put(self, url: str, **options: Any) -> Outcome:
        return await self.request("PUT", url, **options)

    async def delete(self, url: str, **options: Any) -> Outcome:
        return await self.request("DELETE", url, **options)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancellation_source(self, *, follow_scope: bool = False) -> CancellationSource:
        """Create an abort handle for individual requests.

        A source following the scope holds a callback on the scope token
        until it is closed; use it as a context manager.

        Args:
            follow_scope: Also cancel when the current scope is invalidated
        """
        parent = self.pipeline.current_token if follow_scope else None
        return CancellationSource(parent)

    def invalidate_scope(self, reason: str = "Cancellation scope invalidated") -> int:
        """Cancel every request bound to the current scope."""
        return self.pipeline.invalidate_scope(reason)
