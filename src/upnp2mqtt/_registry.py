"""Device registry: the single authority over live devices.

A :class:`DeviceRecord` is keyed by usn and owns the subscriptions of
its device, keyed by SID.  Records are only mutated by the discovery
worker while it processes an event, or by whoever holds the usn's
lock from :meth:`DeviceRegistry.lock`.
"""

from __future__ import annotations

import asyncio
import enum
import weakref
from collections.abc import Iterator
from dataclasses import dataclass, field

from upnp2mqtt._description import DeviceDescriptor
from upnp2mqtt._discovery import DiscoveryEvent
from upnp2mqtt._gena import SubscriptionHandle


class DeviceState(enum.Enum):
    """Per-device life cycle.

    A record is created once its description is fetched (the fetch
    itself is tracked by the processed guard), then goes
    ``SUBSCRIBING -> ACTIVE``.  Lease renewal is invisible
    here (the GENA adapter renews on its own); a failed renewal moves
    the device to ``RENEWAL_FAILED -> ROLLBACK``.  Every teardown passes
    ``UNSUBSCRIBING -> REMOVED``.
    """

    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    RENEWAL_FAILED = "renewal_failed"
    ROLLBACK = "rollback"
    UNSUBSCRIBING = "unsubscribing"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class SubscriptionRecord:
    """One live subscription.  Replaced, never mutated."""

    service_id: str
    event_url: str
    handle: SubscriptionHandle


@dataclass
class DeviceRecord:
    """A device the bridge is subscribed to."""

    event: DiscoveryEvent
    descriptor: DeviceDescriptor
    subscriptions: dict[str, SubscriptionRecord] = field(default_factory=dict)
    state: DeviceState = DeviceState.SUBSCRIBING
    announced: bool = False

    @property
    def usn(self) -> str:
        return self.event.usn

    @property
    def location(self) -> str:
        return self.event.location

    @property
    def udn(self) -> str:
        return self.descriptor.udn


class DeviceRegistry:
    """Mapping from usn to :class:`DeviceRecord`, plus per-usn locks."""

    def __init__(self) -> None:
        self._records: dict[str, DeviceRecord] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def set(self, usn: str, record: DeviceRecord) -> None:
        """Register *record* under *usn*, replacing any previous one."""
        self._records[usn] = record

    def get(self, usn: str) -> DeviceRecord | None:
        """Return the record of *usn*, or ``None``."""
        return self._records.get(usn)

    def has(self, usn: str) -> bool:
        """True while *usn* is registered."""
        return usn in self._records

    def delete(self, usn: str) -> DeviceRecord | None:
        """Remove *usn* and return its record, or ``None`` if unknown."""
        return self._records.pop(usn, None)

    def lock(self, usn: str) -> asyncio.Lock:
        """Lock serialising every mutation of *usn*'s record.

        A lock nobody holds, waits on or references is dropped.
        """
        lock = self._locks.get(usn)
        if lock is None:
            lock = self._locks[usn] = asyncio.Lock()
        return lock

    def find_subscription(
        self,
        sid: str,
    ) -> tuple[DeviceRecord, SubscriptionRecord] | None:
        """Return the device and subscription owning *sid*, if any."""
        for record in self._records.values():
            subscription = record.subscriptions.get(sid)
            if subscription is not None:
                return record, subscription
        return None

    def usns(self) -> list[str]:
        """Snapshot of registered usns, safe to iterate while mutating."""
        return list(self._records)

    def subscription_count(self) -> int:
        """Number of live subscriptions across all devices."""
        return sum(len(r.subscriptions) for r in self._records.values())

    def __iter__(self) -> Iterator[DeviceRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, usn: object) -> bool:
        return usn in self._records
