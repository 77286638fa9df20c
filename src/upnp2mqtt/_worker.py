"""The discovery queue worker.

One loop, one event at a time: fetch and subscribe-all for a device
completes, or fails and is parked for a retry, before the next event
starts.  Failures never leave the loop.
"""

from __future__ import annotations

import asyncio
import logging

from upnp2mqtt._context import BridgeContext
from upnp2mqtt._discovery import DiscoveryEvent
from upnp2mqtt._pipeline import Pipeline

logger = logging.getLogger(__name__)


class DiscoveryWorker:
    """Drains the discovery queue of a :class:`BridgeContext`."""

    def __init__(self, ctx: BridgeContext, pipeline: Pipeline) -> None:
        self._ctx = ctx
        self._pipeline = pipeline

    async def run(self) -> None:
        """Process events until shutdown is requested."""
        poll_interval = self._ctx.settings.discovery.poll_interval
        while not self._ctx.shutdown_requested:
            event = self._ctx.queue.get_nowait()
            if event is None:
                await self._ctx.sleep(poll_interval)
                continue
            await self.handle(event)

    async def handle(self, event: DiscoveryEvent) -> bool:
        """Run the pipeline for *event*; roll back and park it on failure."""
        async with self._ctx.registry.lock(event.usn):
            try:
                await self._pipeline.process(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "%s@%s [%s]: %s",
                    event.server or "device",
                    event.location,
                    event.usn,
                    exc,
                )
                await self._pipeline.unprocess(event.usn)
                delay = self._ctx.queue.schedule_retry(event)
                logger.info(
                    "%s parked, attempt %d in %.1fs",
                    event.usn,
                    self._ctx.queue.attempts(event.usn) + 1,
                    delay,
                )
                await self._ctx.errors.publish(exc, device=event.usn)
                return False
        self._ctx.queue.reset_attempts(event.usn)
        return True
