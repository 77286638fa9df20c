"""Shared runtime state of one bridge instance.

:class:`BridgeContext` owns the three pieces of mutable state the
pipeline shares (device registry, processed guard, discovery queue)
together with the services every component publishes through.  One
context is built per run and handed to each component explicitly; no
module keeps state of its own.
"""

from __future__ import annotations

import asyncio
import contextlib

from upnp2mqtt._clock import ClockPort
from upnp2mqtt._errors import ErrorPublisher
from upnp2mqtt._fetcher import ProcessedGuard
from upnp2mqtt._health import HealthReporter
from upnp2mqtt._mqtt import MqttPort
from upnp2mqtt._queue import SubscriptionQueue
from upnp2mqtt._registry import DeviceRegistry
from upnp2mqtt._settings import Settings


class BridgeContext:
    """Per-run state and services, passed to every component."""

    def __init__(
        self,
        *,
        settings: Settings,
        mqtt: MqttPort,
        clock: ClockPort,
        shutdown_event: asyncio.Event,
        health: HealthReporter,
        errors: ErrorPublisher,
    ) -> None:
        self._settings = settings
        self._mqtt = mqtt
        self._clock = clock
        self._shutdown_event = shutdown_event
        self._health = health
        self._errors = errors
        self.registry = DeviceRegistry()
        self.guard = ProcessedGuard()
        self.queue = SubscriptionQueue(
            clock,
            initial_delay=settings.discovery.retry_initial_delay,
            max_delay=settings.discovery.retry_max_delay,
        )

    # -- Read-only properties -----------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def mqtt(self) -> MqttPort:
        return self._mqtt

    @property
    def clock(self) -> ClockPort:
        return self._clock

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def errors(self) -> ErrorPublisher:
        return self._errors

    @property
    def topic_prefix(self) -> str:
        return self._settings.mqtt.topic_prefix

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    @property
    def shutdown_requested(self) -> bool:
        """True once a termination signal or fatal error was handled."""
        return self._shutdown_event.is_set()

    # -- Shutdown-aware sleep -----------------------------------------------

    async def sleep(self, seconds: float) -> None:
        """Sleep, returning early (without exception) on shutdown."""
        sleep_task = asyncio.ensure_future(asyncio.sleep(seconds))
        shutdown_task = asyncio.ensure_future(self._shutdown_event.wait())

        _done, pending = await asyncio.wait(
            {sleep_task, shutdown_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
