"""Throttle engine.

Per key, at most one call is active. Callers arriving while it is active,
or during the cooldown that follows it, are chained to that call and so
observe the identical outcome. The key becomes free again throttle_window
seconds after the call settles.

Every caller receives its own future: cancelling one caller's future
detaches that caller only and leaves the shared call running for the
others.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable

from relay.core.logging import get_logger

from .exceptions import RequestCancelledError
from .futures import chain, settle
from .models import RequestConfig

logger = get_logger(__name__)

Dispatch = Callable[[RequestConfig], asyncio.Future]


@dataclass(eq=False)
class ThrottleState:
    """Active (or cooling down) call for one key."""

    result: asyncio.Future
    window: float
    cooldown: asyncio.TimerHandle | None = None
    joined: int = 0

    def follow(self) -> asyncio.Future:
        """A new caller-owned future settled with the shared result."""
        caller = asyncio.get_running_loop().create_future()
        chain(self.result, caller)
        return caller


class ThrottleEngine:
    """Single-flight per key with a post-completion cooldown."""

    def __init__(self) -> None:
        self._states: dict[str, ThrottleState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def is_active(self, key: str) -> bool:
        return key in self._states

    def submit(self, config: RequestConfig, dispatch: Dispatch) -> asyncio.Future:
        """Join the active call for config.key or start a new one."""
        if config.throttle_window is None:
            raise ValueError("throttle_window is required for throttled submissions")

        key = config.key
        state = self._states.get(key)
        if state is not None:
            state.joined += 1
            logger.debug(
                "Throttled request joined active call",
                key=key,
                joined=state.joined,
                request_id=config.request_id,
            )
            return state.follow()

        state = ThrottleState(result=dispatch(config), window=config.throttle_window)
        self._states[key] = state
        state.result.add_done_callback(lambda _: self._cool_down(key, state))
        return state.follow()

    def close(self) -> None:
        """Cancel cooldowns and reject any still-active shared results."""
        states, self._states = self._states, {}
        for state in states.values():
            if state.cooldown is not None:
                state.cooldown.cancel()
            settle(state.result, error=RequestCancelledError("Pipeline closed"))

    def _cool_down(self, key: str, state: ThrottleState) -> None:
        if self._states.get(key) is not state:
            return
        loop = asyncio.get_running_loop()
        state.cooldown = loop.call_later(state.window, self._expire, key, state)

    def _expire(self, key: str, state: ThrottleState) -> None:
        if self._states.get(key) is state:
            del self._states[key]
            logger.debug("Throttle window elapsed", key=key, joined=state.joined)
