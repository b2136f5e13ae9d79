"""Single-flight credential refresh.

State machine: IDLE -> REFRESHING -> IDLE

- The first authorization failure starts one renewal call and parks the
  failed request as a waiter.
- While REFRESHING, every further authorization failure is parked too;
  no second renewal call is issued.
- On success the new credential is stored and every waiter is resumed
  (the pipeline replays it with the fresh token).
- On failure the credential store is cleared, a single sign-out side
  effect is emitted and every waiter is rejected with AuthExpiredError.

Waiters are drained before the coordinator returns to IDLE, so no request
is resumed twice for the same renewal cycle.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from pydantic import ValidationError

from relay.core.logging import bind_request_context, get_logger

from .credentials import CredentialStore
from .exceptions import AuthExpiredError, PipelineError, RequestCancelledError
from .models import Outcome, RequestConfig, TokenResponse
from .notifier import Notifier

logger = get_logger(__name__)

Renew = Callable[[RequestConfig], Awaitable[Outcome]]
Resume = Callable[[PipelineError | None], None]

REFRESH_KEY = "credential-refresh"


class RefreshStatus(str, Enum):
    """Coordinator states."""

    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass(eq=False)
class RefreshWaiter:
    """A request parked until the renewal call settles."""

    config: RequestConfig
    resume: Resume


class CredentialRefreshCoordinator:
    """Runs at most one renewal call and fans its result out to waiters.

    Args:
        credentials: Store read for the refresh credential and updated
            with the renewed one
        notifier: Receives the sign-out side effect on failure
        renew: Performs the renewal request (bypasses admission)
        refresh_path: Token endpoint accepting the refresh grant
    """

    def __init__(
        self,
        credentials: CredentialStore,
        notifier: Notifier,
        renew: Renew,
        *,
        refresh_path: str = "/oauth2/token",
    ) -> None:
        self._credentials = credentials
        self._notifier = notifier
        self._renew = renew
        self.refresh_path = refresh_path

        self._status = RefreshStatus.IDLE
        self._waiters: list[RefreshWaiter] = []
        self._task: asyncio.Task | None = None
        self._cycles = 0

    @property
    def status(self) -> RefreshStatus:
        return self._status

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    @property
    def cycles(self) -> int:
        """Number of renewal calls issued so far."""
        return self._cycles

    def defer(self, config: RequestConfig, resume: Resume) -> None:
        """Park a request that failed authorization.

        Args:
            config: The failed request (keeps its admission slot)
            resume: Called once with None after a successful renewal, or
                with the error the request must fail with
        """
        self._waiters.append(RefreshWaiter(config=config, resume=resume))

        if self._status is RefreshStatus.REFRESHING:
            logger.debug(
                "Request waiting for credential refresh",
                request_id=config.request_id,
                waiting=len(self._waiters),
            )
            return

        self._status = RefreshStatus.REFRESHING
        self._cycles += 1
        self._task = asyncio.get_running_loop().create_task(self._refresh())
        logger.info("Credential refresh started", cycle=self._cycles)

    def close(self) -> None:
        """Abort an in-flight renewal and reject its waiters."""
        waiters, self._waiters = self._waiters, []
        self._status = RefreshStatus.IDLE
        if self._task is not None:
            self._task.cancel()
            self._task = None
        for waiter in waiters:
            waiter.resume(
                RequestCancelledError(
                    "Pipeline closed", request_id=waiter.config.request_id
                )
            )

    async def _refresh(self) -> None:
        try:
            token = await self._renew_credential()
        except (PipelineError, ValidationError) as e:
            logger.warning("Credential refresh failed", error=str(e))
            token = None
        except Exception as e:
            logger.exception("Unexpected error during credential refresh", error=str(e))
            token = None

        waiters, self._waiters = self._waiters, []
        self._status = RefreshStatus.IDLE
        self._task = None

        if token is None:
            self._expire(waiters)
            return

        logger.info("Credential refresh succeeded", replaying=len(waiters))
        for waiter in waiters:
            waiter.resume(None)

    async def _renew_credential(self) -> TokenResponse | None:
        """Exchange the refresh credential for a new access credential."""
        refresh_token = self._credentials.get_refresh_credential()
        if not refresh_token:
            logger.warning("No refresh credential available")
            return None

        config = RequestConfig(
            method="POST",
            url=self.refresh_path,
            json={"grant_type": "refresh_token", "refresh_token": refresh_token},
            key=REFRESH_KEY,
            cancellation=None,
            authenticated=False,
            notify_errors=False,
            is_refresh_call=True,
        )
        # Runs in its own task; replaces the context copied from the first waiter
        bind_request_context(config.request_id, origin=config.origin.value, attempt=1)
        outcome = await self._renew(config)
        token = TokenResponse.from_body(outcome.body)
        self._credentials.set_credential(token.access_token, token.refresh_token)
        return token

    def _expire(self, waiters: list[RefreshWaiter]) -> None:
        self._credentials.clear()
        self._notifier.on_auth_expired()
        for waiter in waiters:
            waiter.resume(AuthExpiredError(request_id=waiter.config.request_id))
