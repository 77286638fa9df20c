"""Subscription manager: subscribe, tear down and recover devices.

A device is either fully subscribed or not in the registry at all once
a pipeline step has finished.  :meth:`SubscriptionManager.subscribe_all`
therefore stops at the first failing service and leaves the rollback of
the siblings it already created to the caller, and a failed lease
renewal on any one subscription brings down the whole device.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from upnp2mqtt._context import BridgeContext
from upnp2mqtt._description import ServiceDescriptor
from upnp2mqtt._errors import RenewalError, SubscribeError, UnsubscribeError
from upnp2mqtt._gena import (
    NotificationCallback,
    SubscriptionErrorKind,
    SubscriptionPort,
)
from upnp2mqtt._registry import DeviceRecord, DeviceState, SubscriptionRecord

logger = logging.getLogger(__name__)

DeviceLostCallback = Callable[[DeviceRecord, RenewalError], Awaitable[None]]
"""Called after a device was torn down because a renewal failed."""


class SubscriptionManager:
    """Owns the subscriptions of every device in the registry.

    Args:
        ctx: Shared bridge state.
        port: GENA subscription port.
        on_message: Callback receiving every notification.
        on_device_lost: Callback run after a renewal failure tore a
            device down, while its usn lock is still held.
        lease_seconds: Requested lease; ``None`` leaves it to the port.
    """

    def __init__(
        self,
        ctx: BridgeContext,
        port: SubscriptionPort,
        *,
        on_message: NotificationCallback,
        on_device_lost: DeviceLostCallback | None = None,
        lease_seconds: int | None = None,
    ) -> None:
        self._ctx = ctx
        self._port = port
        self._on_message = on_message
        self._on_device_lost = on_device_lost
        self._lease_seconds = lease_seconds

    async def subscribe_all(
        self,
        record: DeviceRecord,
        services: Sequence[ServiceDescriptor],
    ) -> None:
        """Subscribe to *services* one at a time, in order.

        *record* must already be in the registry so that notifications
        sent right after a SUBSCRIBE find their device.

        Raises:
            SubscribeError: On the first service that cannot be
                subscribed.  ``registered`` tells how many subscriptions
                were added to *record* before it.
        """
        record.state = DeviceState.SUBSCRIBING
        for service in services:
            handle = self._port.open(service.event_url, self._lease_seconds)
            handle.on_message(self._on_message)
            handle.on_error(self._handle_error)
            try:
                sid = await handle.subscribe()
            except Exception as exc:
                raise SubscribeError(
                    record.usn,
                    service.service_id,
                    str(exc) or type(exc).__name__,
                    registered=len(record.subscriptions),
                ) from exc
            if not sid:
                raise SubscribeError(
                    record.usn,
                    service.service_id,
                    "no subscription id returned",
                    registered=len(record.subscriptions),
                )
            # No await between the acknowledgment and this insert.
            record.subscriptions[sid] = SubscriptionRecord(
                service_id=service.service_id,
                event_url=service.event_url,
                handle=handle,
            )
            logger.debug("Subscribed %s %s as %s", record.usn, service.service_id, sid)
        record.state = DeviceState.ACTIVE

    async def unsubscribe_all(self, usn: str) -> DeviceRecord | None:
        """Tear down every subscription of *usn*, best effort.

        UNSUBSCRIBE requests go out concurrently.  Failures are logged;
        the record is removed and its location released regardless.
        Returns the removed record, or ``None`` if *usn* was unknown.
        """
        record = self._ctx.registry.get(usn)
        if record is None:
            return None

        record.state = DeviceState.UNSUBSCRIBING
        subscriptions = list(record.subscriptions.items())
        results = await asyncio.gather(
            *(sub.handle.unsubscribe() for _sid, sub in subscriptions),
            return_exceptions=True,
        )
        for (sid, sub), result in zip(subscriptions, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                error = UnsubscribeError(sid, str(result) or type(result).__name__)
                logger.warning(
                    "Unsubscribe of %s (%s) failed: %s",
                    sub.service_id,
                    usn,
                    error,
                )
                await self._ctx.errors.publish(error, device=usn)

        record.subscriptions.clear()
        self._ctx.registry.delete(usn)
        self._ctx.guard.release(record.location)
        record.state = DeviceState.REMOVED
        logger.info("Unsubscribed from %s (%s)", record.descriptor.friendly_name, usn)
        return record

    def unsubscribe_all_nowait(self, usn: str, released: set[str] | None = None) -> int:
        """Fire UNSUBSCRIBE for every subscription of *usn* without waiting.

        Only for process shutdown.  SIDs already in *released* are
        skipped; fired SIDs are added to it.  Returns the number of
        requests fired.
        """
        record = self._ctx.registry.get(usn)
        if record is None:
            return 0
        record.state = DeviceState.UNSUBSCRIBING
        fired = 0
        for sid, sub in list(record.subscriptions.items()):
            if released is not None and sid in released:
                continue
            try:
                sub.handle.unsubscribe_nowait()
                fired += 1
            except Exception:
                logger.exception("Failed to fire unsubscribe for %s", sid)
            if released is not None:
                released.add(sid)
        return fired

    async def _handle_error(
        self,
        sid: str,
        kind: SubscriptionErrorKind,
        error: Exception,
    ) -> None:
        if kind is not SubscriptionErrorKind.RESUBSCRIBE:
            logger.warning("Subscription %s reported %s error: %s", sid, kind.value, error)
            return

        found = self._ctx.registry.find_subscription(sid)
        if found is None:
            logger.debug("Renewal failure for unknown subscription %s", sid)
            return
        record, subscription = found
        renewal_error = RenewalError(sid, str(error) or type(error).__name__)
        logger.warning(
            "Renewal of %s for %s (%s) failed, tearing the device down: %s",
            subscription.service_id,
            record.descriptor.friendly_name,
            record.usn,
            error,
        )
        if record.state is DeviceState.ACTIVE:
            record.state = DeviceState.RENEWAL_FAILED

        async with self._ctx.registry.lock(record.usn):
            if self._ctx.registry.get(record.usn) is not record:
                logger.debug("%s already torn down", record.usn)
                return
            record.state = DeviceState.ROLLBACK
            await self.unsubscribe_all(record.usn)
            if self._on_device_lost is not None:
                await self._on_device_lost(record, renewal_error)
