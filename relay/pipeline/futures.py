"""Future plumbing shared by the gates."""

import asyncio
from typing import Any


def settle(future: asyncio.Future, *, result: Any = None, error: BaseException | None = None) -> bool:
    """Resolve or reject a future unless it already settled.

    Returns:
        True if this call settled the future
    """
    if future.done():
        return False
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)
    return True


def chain(source: asyncio.Future, target: asyncio.Future) -> None:
    """Copy the eventual outcome of source into target."""

    def _copy(done: asyncio.Future) -> None:
        if target.done():
            return
        if done.cancelled():
            target.cancel()
        elif done.exception() is not None:
            target.set_exception(done.exception())
        else:
            target.set_result(done.result())

    source.add_done_callback(_copy)
