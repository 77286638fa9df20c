"""Monotonic clock port used by the retry schedule and health uptime.

Retry deadlines must survive NTP adjustments, so everything time-based
in the bridge reads ``time.monotonic()`` through :class:`ClockPort`.
Tests substitute :class:`upnp2mqtt.testing.FakeClock`.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic time source.

    Only differences between two ``now()`` readings are meaningful.
    """

    def now(self) -> float: ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``."""

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()
