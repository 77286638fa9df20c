"""Discovery event queue with an explicit retry schedule.

Ready events wait in FIFO order.  A failed event is parked with a
deadline and an attempt count; :meth:`SubscriptionQueue.release_due`
moves parked events whose deadline has passed back to the tail of the
FIFO.  The discovery worker calls it on every iteration, so one loop
drives all retries and no timer per event ever exists.

Backoff is per usn: ``initial_delay * 2 ** (attempt - 1)`` capped at
``max_delay``.  A success resets the usn's attempt count.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field

from upnp2mqtt._clock import ClockPort
from upnp2mqtt._discovery import DiscoveryEvent

logger = logging.getLogger(__name__)


@dataclass(order=True, slots=True)
class _Parked:
    deadline: float
    seq: int
    attempt: int = field(compare=False)
    event: DiscoveryEvent = field(compare=False)


class SubscriptionQueue:
    """FIFO of discovery events plus parked retries."""

    def __init__(
        self,
        clock: ClockPort,
        *,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
    ) -> None:
        self._clock = clock
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._ready: deque[DiscoveryEvent] = deque()
        self._parked: list[_Parked] = []
        self._parked_by_usn: dict[str, _Parked] = {}
        self._attempts: dict[str, int] = {}
        self._seq = itertools.count()

    def put(self, event: DiscoveryEvent) -> bool:
        """Append *event* to the ready queue.

        While the event's usn is parked for a retry, the parked entry
        takes the newer event instead and keeps its deadline; ``False``
        is returned in that case.
        """
        parked = self._parked_by_usn.get(event.usn)
        if parked is not None:
            parked.event = event
            logger.debug("%s is waiting for a retry, event folded in", event.usn)
            return False
        self._ready.append(event)
        return True

    def get_nowait(self) -> DiscoveryEvent | None:
        """Pop the next ready event after releasing due retries."""
        self.release_due()
        if not self._ready:
            return None
        return self._ready.popleft()

    def backoff(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        return min(self._initial_delay * 2 ** (attempt - 1), self._max_delay)

    def schedule_retry(self, event: DiscoveryEvent) -> float:
        """Park *event* until its backoff elapses; return the delay."""
        attempt = self._attempts.get(event.usn, 0) + 1
        self._attempts[event.usn] = attempt
        delay = self.backoff(attempt)

        existing = self._parked_by_usn.get(event.usn)
        if existing is not None:
            existing.event = event
            return existing.deadline - self._clock.now()

        parked = _Parked(self._clock.now() + delay, next(self._seq), attempt, event)
        heapq.heappush(self._parked, parked)
        self._parked_by_usn[event.usn] = parked
        return delay

    def release_due(self) -> int:
        """Move every parked event whose deadline has passed to the FIFO."""
        now = self._clock.now()
        released = 0
        while self._parked and self._parked[0].deadline <= now:
            parked = heapq.heappop(self._parked)
            del self._parked_by_usn[parked.event.usn]
            self._ready.append(parked.event)
            released += 1
        return released

    def discard(self, usn: str) -> int:
        """Forget every queued or parked event of *usn* and its attempts.

        Returns the number of events dropped.
        """
        dropped = 0
        parked = self._parked_by_usn.pop(usn, None)
        if parked is not None:
            self._parked.remove(parked)
            heapq.heapify(self._parked)
            dropped += 1
        remaining = [event for event in self._ready if event.usn != usn]
        dropped += len(self._ready) - len(remaining)
        self._ready = deque(remaining)
        self._attempts.pop(usn, None)
        return dropped

    def reset_attempts(self, usn: str) -> None:
        """Forget the failure count of *usn* after a success."""
        self._attempts.pop(usn, None)

    def attempts(self, usn: str) -> int:
        """Consecutive failures recorded for *usn*."""
        return self._attempts.get(usn, 0)

    def is_parked(self, usn: str) -> bool:
        return usn in self._parked_by_usn

    def next_deadline(self) -> float | None:
        """Earliest parked deadline, or ``None`` when nothing is parked."""
        return self._parked[0].deadline if self._parked else None

    @property
    def parked_count(self) -> int:
        """Number of events waiting for a retry."""
        return len(self._parked)

    def __len__(self) -> int:
        return len(self._ready)
