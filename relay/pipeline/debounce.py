"""Debounce engine.

Per key, holds a submission back until a quiet period elapses. A newer
submission for the same key supersedes the pending one: its timer and its
cancellation token are cancelled, and its caller receives
RequestSupersededError. Only the last submission of a burst is dispatched.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable

from relay.core.logging import get_logger

from .exceptions import RequestCancelledError, RequestSupersededError
from .futures import chain, settle
from .models import Origin, RequestConfig

logger = get_logger(__name__)

Fire = Callable[[RequestConfig], asyncio.Future]


@dataclass(eq=False)
class DebounceState:
    """Pending submission for one key."""

    config: RequestConfig
    waiter: asyncio.Future
    timer: asyncio.TimerHandle | None = None


class DebounceEngine:
    """Delays dispatch per key until a quiet window elapses."""

    def __init__(self) -> None:
        self._states: dict[str, DebounceState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def is_pending(self, key: str) -> bool:
        return key in self._states

    def submit(self, config: RequestConfig, fire: Fire) -> asyncio.Future:
        """Arm the timer for config.key, superseding any pending submission.

        Args:
            config: Request with debounce_window set
            fire: Called with the config when the window elapses; its
                future's outcome is copied into the returned future

        Returns:
            Future settled exactly once with the dispatched outcome or
            with RequestSupersededError / RequestCancelledError
        """
        if config.debounce_window is None:
            raise ValueError("debounce_window is required for debounced submissions")

        loop = asyncio.get_running_loop()
        key = config.key
        self._supersede(key, config.request_id)

        # Own token per submission so superseding never touches the scope
        parent = config.token
        if parent is not None:
            config.cancellation = parent.child()

        state = DebounceState(config=config, waiter=loop.create_future())
        state.timer = loop.call_later(
            config.debounce_window, self._fire, key, state, fire
        )
        self._states[key] = state

        token = config.token
        if token is not None:
            token.add_callback(lambda _: self._abandon(key, state))
            state.waiter.add_done_callback(lambda _: token.detach())

        logger.debug(
            "Debounce armed",
            key=key,
            window=config.debounce_window,
            request_id=config.request_id,
        )
        return state.waiter

    def close(self) -> None:
        """Drop every pending timer and reject its caller."""
        states, self._states = self._states, {}
        for state in states.values():
            if state.timer is not None:
                state.timer.cancel()
            settle(
                state.waiter,
                error=RequestCancelledError(
                    "Pipeline closed", request_id=state.config.request_id
                ),
            )

    def _supersede(self, key: str, by_request_id: str) -> None:
        previous = self._states.pop(key, None)
        if previous is None:
            return
        if previous.timer is not None:
            previous.timer.cancel()
        settle(
            previous.waiter,
            error=RequestSupersededError(key, request_id=previous.config.request_id),
        )
        token = previous.config.token
        if token is not None:
            token.cancel("Superseded")
        logger.debug(
            "Debounced request superseded",
            key=key,
            superseded=previous.config.request_id,
            by=by_request_id,
        )

    def _abandon(self, key: str, state: DebounceState) -> None:
        """Token cancelled while the timer was pending."""
        if self._states.get(key) is not state:
            return
        del self._states[key]
        if state.timer is not None:
            state.timer.cancel()
        token = state.config.token
        error = (
            token.error(state.config.request_id)
            if token is not None
            else RequestCancelledError(request_id=state.config.request_id)
        )
        settle(state.waiter, error=error)

    def _fire(self, key: str, state: DebounceState, fire: Fire) -> None:
        if self._states.get(key) is not state:
            return
        del self._states[key]

        config = state.config
        config.origin = Origin.DEBOUNCE_FIRE
        logger.debug("Debounce window elapsed", key=key, request_id=config.request_id)
        chain(fire(config), state.waiter)
