"""Discovery processing pipeline: fetch, extract, subscribe, and undo.

:meth:`Pipeline.process` turns one discovery event into a fully
subscribed :class:`DeviceRecord`; :meth:`Pipeline.unprocess` reverses it.
Both expect the caller to hold the usn's registry lock.  The
out-of-band handlers for ``UPDATE`` and ``UNAVAILABLE`` take that lock
themselves, so an update's teardown always completes before the
replacement event is queued.
"""

from __future__ import annotations

import logging

from upnp2mqtt._context import BridgeContext
from upnp2mqtt._description import DescriptionPort
from upnp2mqtt._discovery import DiscoveryEvent
from upnp2mqtt._errors import RenewalError
from upnp2mqtt._fetcher import DescriptionFetcher
from upnp2mqtt._gena import SubscriptionPort
from upnp2mqtt._registry import DeviceRecord
from upnp2mqtt._relay import EventRelay
from upnp2mqtt._subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


class Pipeline:
    """Fetch → extract → subscribe-all for one device at a time."""

    def __init__(
        self,
        ctx: BridgeContext,
        *,
        descriptions: DescriptionPort,
        subscriptions: SubscriptionPort,
    ) -> None:
        self._ctx = ctx
        self.fetcher = DescriptionFetcher(descriptions, ctx.guard)
        self.relay = EventRelay(ctx)
        self.manager = SubscriptionManager(
            ctx,
            subscriptions,
            on_message=self.relay.relay,
            on_device_lost=self._device_lost,
            lease_seconds=ctx.settings.eventing.lease_seconds,
        )

    async def process(self, event: DiscoveryEvent) -> DeviceRecord | None:
        """Fetch the description of *event*'s device and subscribe to it.

        Returns the new record, or ``None`` when the event needed no work
        (device already active at that location, or location guarded).

        Raises:
            FetchError: Description could not be fetched or parsed.
            SubscribeError: A service could not be subscribed.  The
                partially subscribed record stays in the registry for
                :meth:`unprocess` to roll back.
        """
        existing = self._ctx.registry.get(event.usn)
        if existing is not None:
            if existing.location == event.location:
                logger.debug("%s already active at %s", event.usn, event.location)
                return None
            logger.info(
                "%s moved from %s to %s",
                event.usn,
                existing.location,
                event.location,
            )
            await self.unprocess(event.usn)

        descriptor = await self.fetcher.fetch(event.location)
        if descriptor is None:
            return None

        record = DeviceRecord(event=event, descriptor=descriptor)
        self._ctx.registry.set(event.usn, record)
        await self.manager.subscribe_all(record, descriptor.services)

        await self._ctx.health.publish_device_available(descriptor.udn)
        record.announced = True
        logger.info(
            "%s at %s: subscribed to %d service(s)",
            descriptor.friendly_name,
            event.location,
            len(record.subscriptions),
        )
        return record

    async def unprocess(self, usn: str) -> bool:
        """Tear down *usn*'s subscriptions and forget the device.

        Returns ``False`` when *usn* was not registered.
        """
        record = await self.manager.unsubscribe_all(usn)
        if record is None:
            return False
        if record.announced:
            await self._ctx.health.publish_device_unavailable(record.udn)
        return True

    async def handle_update(self, event: DiscoveryEvent) -> None:
        """Tear down the old subscription set, then queue *event* again."""
        async with self._ctx.registry.lock(event.usn):
            await self.unprocess(event.usn)
        self._ctx.queue.put(event)

    async def handle_unavailable(self, event: DiscoveryEvent) -> None:
        """Tear *event*'s device down and drop its pending events."""
        async with self._ctx.registry.lock(event.usn):
            if await self.unprocess(event.usn):
                logger.info("%s left the network", event.usn)
            if self._ctx.queue.discard(event.usn):
                logger.debug("Dropped pending events of %s", event.usn)

    async def _device_lost(self, record: DeviceRecord, error: RenewalError) -> None:
        if record.announced:
            await self._ctx.health.publish_device_unavailable(record.udn)
        await self._ctx.errors.publish(error, device=record.usn)
        delay = self._ctx.queue.schedule_retry(record.event)
        logger.info("%s re-queued, next attempt in %.1fs", record.usn, delay)
