"""Admission control with a priority wait queue.

Bounds the number of simultaneously in-flight requests. Submissions beyond
the bound wait in a priority queue and are released one per freed slot.

Ordering Guarantees (DOCUMENTED):
- GUARANTEED: 0 <= in_flight <= max_in_flight at all times
- GUARANTEED: Release order is priority descending, then arrival order
- GUARANTEED: Entries of equal priority are never reordered
- NOT GUARANTEED: Starvation freedom. A LOW request can wait indefinitely
  under sustained HIGH/NORMAL load.

Slot Discipline:
- One slot per logical request, held across its retries and refresh replays
- release() exactly once per admitted request, on every exit path
- A slot freed by release() is handed straight to the next queued entry

Usage:
    controller = AdmissionController(max_in_flight=4)

    await controller.admit(config)     # suspends while all slots are busy
    try:
        ...dispatch...
    finally:
        controller.release()
"""

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any

from relay.core.logging import get_logger

from .exceptions import RequestCancelledError
from .futures import settle
from .models import Origin, RequestConfig

logger = get_logger(__name__)


# =============================================================================
# PRIORITY QUEUE
# =============================================================================


@dataclass(order=True)
class QueueEntry:
    """A request waiting for a slot.

    Sorted by (-priority, sequence) so the heap pops the highest priority
    first and, within a priority, the earliest arrival.
    """

    sort_key: tuple[int, int]
    config: RequestConfig = field(compare=False)
    resume: asyncio.Future = field(compare=False)

    @property
    def pending(self) -> bool:
        return not self.resume.done()


class PriorityQueue:
    """Heap of QueueEntry with lazy removal of settled entries."""

    def __init__(self) -> None:
        self._heap: list[QueueEntry] = []
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return sum(1 for entry in self._heap if entry.pending)

    def push(self, config: RequestConfig, resume: asyncio.Future) -> QueueEntry:
        entry = QueueEntry(
            sort_key=(-int(config.priority), next(self._sequence)),
            config=config,
            resume=resume,
        )
        heapq.heappush(self._heap, entry)
        return entry

    def pop(self) -> QueueEntry | None:
        """Pop the next entry still waiting, skipping cancelled ones."""
        while self._heap:
            entry = heapq.heappop(self._heap)
            if entry.pending:
                return entry
        return None

    def drain(self) -> list[QueueEntry]:
        entries = [entry for entry in sorted(self._heap) if entry.pending]
        self._heap.clear()
        return entries


# =============================================================================
# ADMISSION CONTROLLER
# =============================================================================


class AdmissionController:
    """Bounded in-flight counter in front of the transport."""

    def __init__(self, max_in_flight: int) -> None:
        """
        Initialize admission controller.

        Args:
            max_in_flight: Maximum simultaneously in-flight requests
        """
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be at least 1, got {max_in_flight}")
        self.max_in_flight = max_in_flight
        self._in_flight = 0
        self._queue = PriorityQueue()

        # Statistics
        self._total_admitted = 0
        self._total_queued = 0
        self._total_released = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return len(self._queue)

    def admit(self, config: RequestConfig) -> asyncio.Future:
        """Claim a slot for config.

        Returns:
            Future resolved once the slot is held: immediately when one is
            free, otherwise when release() hands one over. Rejected with
            RequestCancelledError if the request's token is cancelled
            while it waits.
        """
        loop = asyncio.get_running_loop()
        resume = loop.create_future()

        if self._in_flight < self.max_in_flight:
            self._in_flight += 1
            self._total_admitted += 1
            resume.set_result(None)
            return resume

        self._queue.push(config, resume)
        self._total_queued += 1

        token = config.token
        if token is not None:

            def on_cancel(cancelled_token: Any) -> None:
                settle(resume, error=cancelled_token.error(config.request_id))

            token.add_callback(on_cancel)
            resume.add_done_callback(lambda _: token.remove_callback(on_cancel))

        logger.debug(
            "Request queued for admission",
            request_id=config.request_id,
            priority=config.priority.name,
            in_flight=self._in_flight,
            queued=self.queued,
        )
        return resume

    def release(self) -> None:
        """Free one slot and hand it to the next queued request, if any."""
        if self._in_flight <= 0:
            raise RuntimeError("release() called with no request in flight")

        self._in_flight -= 1
        self._total_released += 1

        entry = self._queue.pop()
        if entry is None:
            return

        self._in_flight += 1
        self._total_admitted += 1
        entry.config.origin = Origin.QUEUE_RELEASE
        entry.resume.set_result(None)

        logger.debug(
            "Queued request admitted",
            request_id=entry.config.request_id,
            priority=entry.config.priority.name,
            in_flight=self._in_flight,
        )

    def close(self) -> None:
        """Reject every queued request. Held slots are released normally."""
        for entry in self._queue.drain():
            settle(
                entry.resume,
                error=RequestCancelledError(
                    "Pipeline closed", request_id=entry.config.request_id
                ),
            )

    def get_stats(self) -> dict[str, Any]:
        """Get admission statistics."""
        return {
            "max_in_flight": self.max_in_flight,
            "in_flight": self._in_flight,
            "queued": self.queued,
            "available_slots": max(0, self.max_in_flight - self._in_flight),
            "total_admitted": self._total_admitted,
            "total_queued": self._total_queued,
            "total_released": self._total_released,
        }
