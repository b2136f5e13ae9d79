"""Request pipeline orchestrator.

Composes every reliability mechanism around a Transport. A fresh
submission passes, in order:

    bind cancellation -> debounce -> throttle -> admission -> dispatch

and a failed attempt is classified, in order:

    cancelled -> authorization failure -> retryable -> terminal

Retries, queue releases and refresh replays are not recursive submits:
each attempt runs as its own task, and the request's Origin selects the
suspension point it waits at before dispatching again. The admission
slot claimed by a request is held across all of its attempts and released
exactly once when the request settles.

Usage:
    pipeline = RequestPipeline(transport, credentials)
    outcome = await pipeline.request(RequestConfig(method="GET", url="/me"))
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from relay.core.config import Settings, get_settings
from relay.core.logging import bind_request_context, get_logger

from .admission import AdmissionController
from .cancellation import CancellationScope, CancellationToken
from .credentials import CredentialStore, InMemoryCredentialStore
from .debounce import DebounceEngine
from .exceptions import (
    AuthenticationError,
    AuthExpiredError,
    BusinessError,
    ClientError,
    PipelineError,
    RequestCancelledError,
    ServerError,
    is_cancellation,
)
from .futures import settle
from .models import Origin, Outcome, RequestConfig
from .notifier import LoggingNotifier, Notifier
from .refresh import CredentialRefreshCoordinator
from .retry import RetryPolicy
from .throttle import ThrottleEngine
from .transport import Transport

logger = get_logger(__name__)

DEFAULT_HEADERS = {"Content-Type": "application/json;charset=UTF-8"}
DEFAULT_BUSINESS_MESSAGE = "Server busy, please try again later"


@dataclass(eq=False)
class _Lineage:
    """A logical request and the future its caller holds."""

    config: RequestConfig
    future: asyncio.Future
    gate: asyncio.Future | None = None
    holds_slot: bool = False
    delay: float = 0.0


class RequestPipeline:
    """Owns all pipeline state and exposes submit() as the entry point.

    Instances are independent: each has its own scope, queue, debounce and
    throttle maps, and refresh coordinator.

    Args:
        transport: Performs the actual round trips
        credentials: Credential store (defaults to in-memory)
        notifier: Receives terminal errors and the sign-out event
        scope: Cancellation scope (defaults to a fresh one)
        settings: Settings (defaults to get_settings())
        max_in_flight: Override settings.max_in_flight
        retry_policy: Override the settings-derived retry policy
    """

    def __init__(
        self,
        transport: Transport,
        credentials: CredentialStore | None = None,
        *,
        notifier: Notifier | None = None,
        scope: CancellationScope | None = None,
        settings: Settings | None = None,
        max_in_flight: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.transport = transport
        self.credentials = credentials or InMemoryCredentialStore()
        self.notifier = notifier or LoggingNotifier(self.settings.login_route)
        self.scope = scope or CancellationScope()
        self.default_headers = dict(DEFAULT_HEADERS)

        self.admission = AdmissionController(max_in_flight or self.settings.max_in_flight)
        self.debounce = DebounceEngine()
        self.throttle = ThrottleEngine()
        self.retry_policy = retry_policy or RetryPolicy(
            budget=self.settings.retry_times,
            base_delay=self.settings.retry_delay,
        )
        self.refresher = CredentialRefreshCoordinator(
            self.credentials,
            self.notifier,
            self._dispatch,
            refresh_path=self.settings.refresh_path,
        )

        # Running attempt -> the request it belongs to
        self._tasks: dict[asyncio.Task, _Lineage] = {}
        self._closed = False

    async def __aenter__(self) -> "RequestPipeline":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def submit(self, config: RequestConfig) -> asyncio.Future:
        """Submit a request.

        Must be called from a running event loop. All gate decisions are
        taken synchronously, so no other submission can interleave with
        them.

        Returns:
            Future resolving to the Outcome, or rejected with a
            PipelineError subclass
        """
        if config.is_internal:
            raise ValueError(f"Cannot submit a request with origin {config.origin.value}")

        loop = asyncio.get_running_loop()
        if self._closed:
            future = loop.create_future()
            future.set_exception(
                RequestCancelledError("Pipeline closed", request_id=config.request_id)
            )
            return future

        self.scope.bind(config)
        token = config.token
        if token is not None and token.cancelled:
            future = loop.create_future()
            future.set_exception(token.error(config.request_id))
            return future

        logger.debug(
            "Request submitted",
            request_id=config.request_id,
            method=config.method,
            url=config.url,
            key=config.key,
            priority=config.priority.name,
        )

        if config.debounce_window is not None:
            return self.debounce.submit(config, self._throttle_gate)
        return self._throttle_gate(config)

    async def request(self, config: RequestConfig) -> Outcome:
        """Submit a request and wait for its outcome."""
        return await self.submit(config)

    def invalidate_scope(self, reason: str = "Cancellation scope invalidated") -> int:
        """Cancel every request bound to the current scope."""
        return self.scope.invalidate(reason)

    @property
    def current_token(self) -> CancellationToken:
        return self.scope.token

    def get_stats(self) -> dict[str, Any]:
        """Get pipeline statistics."""
        return {
            "admission": self.admission.get_stats(),
            "debounce_pending": len(self.debounce),
            "throttle_active": len(self.throttle),
            "refresh_status": self.refresher.status.value,
            "refresh_waiting": self.refresher.waiting,
            "refresh_cycles": self.refresher.cycles,
            "scope_generation": self.scope.generation,
            "tasks": len(self._tasks),
        }

    async def aclose(self) -> None:
        """Cancel timers, queued requests and running attempts."""
        if self._closed:
            return
        self._closed = True

        self.debounce.close()
        self.throttle.close()
        self.admission.close()
        self.refresher.close()

        attempts = list(self._tasks.items())
        for task, _ in attempts:
            task.cancel()
        await asyncio.gather(*(task for task, _ in attempts), return_exceptions=True)

        # Attempts cancelled before their first step never ran their handlers.
        # _finish is a no-op for requests that already settled and let go of
        # their slot.
        for _, lineage in attempts:
            self._finish(
                lineage,
                error=RequestCancelledError(
                    "Pipeline closed", request_id=lineage.config.request_id
                ),
            )
        logger.debug("Pipeline closed", cancelled_tasks=len(attempts))

    # -------------------------------------------------------------------------
    # Gates
    # -------------------------------------------------------------------------

    def _throttle_gate(self, config: RequestConfig) -> asyncio.Future:
        if config.throttle_window is not None:
            return self.throttle.submit(config, self._admit)
        return self._admit(config)

    def _admit(self, config: RequestConfig) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        lineage = _Lineage(config=config, future=loop.create_future())
        lineage.gate = self.admission.admit(config)
        self._spawn(lineage)
        return lineage.future

    def _spawn(self, lineage: _Lineage) -> None:
        task = asyncio.get_running_loop().create_task(self._step(lineage))
        self._tasks[task] = lineage
        task.add_done_callback(lambda done: self._tasks.pop(done, None))

    # -------------------------------------------------------------------------
    # Attempts
    # -------------------------------------------------------------------------

    async def _step(self, lineage: _Lineage) -> None:
        """Run one attempt of a request."""
        config = lineage.config
        bind_request_context(
            config.request_id,
            origin=config.origin.value,
            attempt=config.retry_count + 1,
        )
        try:
            await self._prepare(lineage)
            outcome = await self._dispatch(config)
        except PipelineError as error:
            self._on_failure(lineage, error)
        except asyncio.CancelledError:
            self._finish(
                lineage,
                error=RequestCancelledError("Pipeline closed", request_id=config.request_id),
            )
            raise
        except Exception as error:
            logger.exception("Unexpected error during dispatch", error=str(error))
            self._finish(lineage, error=error)
        else:
            self._finish(lineage, outcome=outcome)

    async def _prepare(self, lineage: _Lineage) -> None:
        """Wait at the suspension point the request's origin calls for."""
        origin = lineage.config.origin
        if origin is Origin.RETRY:
            await self._pause(lineage.delay, lineage.config.token)
        elif origin is Origin.REFRESH_REPLAY:
            return
        else:
            # EXTERNAL, DEBOUNCE_FIRE or QUEUE_RELEASE: needs a slot
            await self._hold_slot(lineage)

    async def _hold_slot(self, lineage: _Lineage) -> None:
        gate = lineage.gate
        if gate is None:
            return
        try:
            await gate
        finally:
            lineage.gate = None
            if gate.done() and not gate.cancelled() and gate.exception() is None:
                lineage.holds_slot = True

    async def _pause(self, delay: float, token: CancellationToken | None) -> None:
        """Sleep for delay, cut short by cancellation."""
        if token is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise token.error()

    async def _dispatch(self, config: RequestConfig) -> Outcome:
        """Hand the resolved request to the transport and validate the result."""
        token = config.token
        if token is not None:
            token.raise_if_cancelled(config.request_id)

        headers = {**self.default_headers, **config.headers}
        if config.authenticated:
            credential = self.credentials.get_credential()
            if credential:
                headers["Authorization"] = f"Bearer {credential}"

        logger.debug(
            "Dispatching request",
            method=config.method,
            url=config.url,
        )
        outcome = await self.transport.dispatch(
            config.method,
            config.url,
            headers=headers,
            params=config.params,
            json=config.json,
            timeout=config.timeout or self.settings.request_timeout,
            cancellation=token,
        )
        logger.debug("Response received", status=outcome.status, url=config.url)

        self._raise_for_status(outcome, config)
        return outcome

    def _raise_for_status(self, outcome: Outcome, config: RequestConfig) -> None:
        """Raise the matching exception for rejected statuses and envelopes."""
        status = outcome.status
        if not (200 <= status < 300 or status == 304):
            if status == 401:
                raise AuthenticationError(outcome, request_id=config.request_id)
            if 500 <= status < 600:
                raise ServerError(
                    f"Server error: HTTP {status}",
                    outcome,
                    request_id=config.request_id,
                )
            raise ClientError(
                f"Request rejected: HTTP {status}",
                outcome,
                request_id=config.request_id,
            )

        settings = self.settings
        body = outcome.body
        if not settings.business_envelope_enabled or not isinstance(body, Mapping):
            return
        if settings.business_code_field not in body:
            return

        code = body[settings.business_code_field]
        if str(code) in {str(c) for c in settings.business_success_codes}:
            return

        message = str(body.get(settings.business_message_field) or DEFAULT_BUSINESS_MESSAGE)
        if str(code) == "401":
            raise AuthenticationError(outcome, message=message, request_id=config.request_id)
        raise BusinessError(message, outcome, business_code=code, request_id=config.request_id)

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def _on_failure(self, lineage: _Lineage, error: PipelineError) -> None:
        """Classify a failed attempt: cancelled, auth, retryable, terminal."""
        config = lineage.config
        if error.request_id is None:
            error.request_id = config.request_id

        if is_cancellation(error):
            logger.info("Request cancelled", reason=error.message)
            self._finish(lineage, error=error)
            return

        if (
            isinstance(error, AuthenticationError)
            and config.authenticated
            and not config.is_refresh_call
        ):
            if config.origin is Origin.REFRESH_REPLAY:
                logger.warning("Replayed request rejected again, giving up")
                self._finish(lineage, error=AuthExpiredError(request_id=config.request_id))
                return
            self.refresher.defer(
                config,
                lambda outcome_error: self._after_refresh(lineage, outcome_error),
            )
            return

        if self.retry_policy.should_retry(error, config):
            delay = self.retry_policy.next_delay(config)
            config.retry_count += 1
            config.origin = Origin.RETRY
            lineage.delay = delay
            logger.warning(
                "Request failed, retrying",
                attempt=config.retry_count,
                max_retries=self.retry_policy.budget_for(config),
                delay=delay,
                error=str(error),
            )
            self._spawn(lineage)
            return

        self._finish(lineage, error=error)

    def _after_refresh(self, lineage: _Lineage, error: PipelineError | None) -> None:
        if error is not None:
            # Refresh failure is surfaced once through on_auth_expired
            self._finish(lineage, error=error, notify=not isinstance(error, AuthExpiredError))
            return
        lineage.config.origin = Origin.REFRESH_REPLAY
        self._spawn(lineage)

    def _finish(
        self,
        lineage: _Lineage,
        *,
        outcome: Outcome | None = None,
        error: BaseException | None = None,
        notify: bool = True,
    ) -> None:
        """Settle the caller's future and free the admission slot."""
        config = lineage.config
        if self._take_slot(lineage):
            self.admission.release()

        if error is None:
            settle(lineage.future, result=outcome)
            return

        if (
            notify
            and config.notify_errors
            and isinstance(error, PipelineError)
            and not is_cancellation(error)
        ):
            self.notifier.notify_error(error, config)

        settle(lineage.future, error=error)

    @staticmethod
    def _take_slot(lineage: _Lineage) -> bool:
        """Detach the admission slot from a settling request.

        The slot belongs to the request as soon as its gate resolves, even
        if the attempt waiting on the gate never resumed. A gate still
        pending is cancelled so the queue skips it.

        Returns:
            True if the caller must release one slot
        """
        gate, lineage.gate = lineage.gate, None
        if gate is not None:
            if not gate.done():
                gate.cancel()
            elif not gate.cancelled() and gate.exception() is None:
                lineage.holds_slot = True

        held, lineage.holds_slot = lineage.holds_slot, False
        return held
