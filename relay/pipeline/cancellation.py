"""Cooperative cancellation for pipeline requests.

Every request is bound to a CancellationToken. Tokens are issued by a
CancellationScope, one generation at a time: invalidating the scope cancels
every token of the previous generation (typically when the user navigates
away), while requests already bound keep their original token.

Callers that want to abort a single request create a CancellationSource
and pass its token on the RequestConfig.

Usage:
    scope = CancellationScope()
    config = RequestConfig(method="GET", url="/orders")
    scope.bind(config)          # config.cancellation is scope.token
    scope.invalidate("left orders page")

    source = CancellationSource()
    config = RequestConfig(method="GET", url="/report", cancellation=source.token)
    source.cancel()
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable

from relay.core.logging import get_logger

from .exceptions import RequestCancelledError

if TYPE_CHECKING:
    from .models import RequestConfig

logger = get_logger(__name__)

DEFAULT_CANCEL_REASON = "Request cancelled"


class _Inherit:
    """Marker: bind the request to the current scope at submission."""

    _instance: "_Inherit | None" = None

    def __new__(cls) -> "_Inherit":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "INHERIT"


INHERIT = _Inherit()

TokenCallback = Callable[["CancellationToken"], None]


class CancellationToken:
    """A one-shot cancellation flag observed at every suspension point."""

    def __init__(self, generation: int = 0) -> None:
        self.generation = generation
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[TokenCallback] = []
        self._event: asyncio.Event | None = None
        self._unlink: Callable[[], None] | None = None

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<CancellationToken gen={self.generation} {state}>"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def listeners(self) -> int:
        """Number of callbacks waiting for cancellation."""
        return len(self._callbacks)

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        """Cancel the token. Idempotent; callbacks run once."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def add_callback(self, callback: TokenCallback) -> None:
        """Run callback on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback(self)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: TokenCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def error(self, request_id: str | None = None) -> RequestCancelledError:
        return RequestCancelledError(
            self._reason or DEFAULT_CANCEL_REASON,
            request_id=request_id,
        )

    def raise_if_cancelled(self, request_id: str | None = None) -> None:
        if self._cancelled:
            raise self.error(request_id)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def child(self) -> "CancellationToken":
        """Create a token cancelled together with this one.

        The child can also be cancelled on its own without affecting
        the parent.
        """
        child = CancellationToken(self.generation)
        if self._cancelled:
            child.cancel(self._reason or DEFAULT_CANCEL_REASON)
            return child

        def propagate(parent: CancellationToken) -> None:
            child.cancel(parent.reason or DEFAULT_CANCEL_REASON)

        self.add_callback(propagate)
        child._unlink = lambda: self.remove_callback(propagate)
        child.add_callback(lambda _: child.detach())
        return child

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._unlink is not None:
            unlink, self._unlink = self._unlink, None
            unlink()


class CancellationSource:
    """Explicit abort handle for one or more requests.

    A source created with a parent registers one callback on it and keeps
    it until either token is cancelled or close() is called. Long-lived parents such as a scope token therefore collect
    one callback per open source; close sources that follow a parent once
    their requests settle, or use the source as a context manager.

    Usage:
        with client.cancellation_source(follow_scope=True) as source:
            await client.get("/report", cancellation=source.token)
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self.token = parent.child() if parent is not None else CancellationToken()

    def __enter__(self) -> "CancellationSource":
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    def cancel(self, reason: str = "Request cancelled by caller") -> None:
        self.token.cancel(reason)

    def close(self) -> None:
        """Stop following the parent. The source can still be cancelled."""
        self.token.detach()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


class CancellationScope:
    """Issues tokens for the current generation of requests.

    Exactly one generation is active at a time. Invalidating moves to a
    new generation and cancels every request bound to the previous one.
    """

    def __init__(self) -> None:
        self._generation = 0
        self._token = CancellationToken(self._generation)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def token(self) -> CancellationToken:
        return self._token

    def bind(self, config: "RequestConfig") -> "RequestConfig":
        """Attach the current token unless the caller chose one.

        An explicit None on the config means the request is never
        cancelled automatically.
        """
        if config.cancellation is INHERIT:
            config.cancellation = self._token
        return config

    def invalidate(self, reason: str = "Cancellation scope invalidated") -> int:
        """Cancel the current generation and start a new one.

        Returns:
            The new generation number
        """
        previous = self._token
        self._generation += 1
        self._token = CancellationToken(self._generation)
        previous.cancel(reason)

        logger.info(
            "Cancellation scope invalidated",
            cancelled_generation=previous.generation,
            generation=self._generation,
            reason=reason,
        )
        return self._generation
