"""Event relay: GENA notifications to MQTT messages.

A notification's property set arrives either as one mapping or as a
sequence of single-key mappings.  :func:`normalize` flattens both into
one ``{name: value}`` dict; :class:`EventRelay` publishes it as
``{"body": {...}}`` on ``{prefix}/{udn}/{serviceId}``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from upnp2mqtt._context import BridgeContext
from upnp2mqtt._gena import RawNotification

logger = logging.getLogger(__name__)


def normalize(raw: RawNotification) -> dict[str, Any]:
    """Flatten a raw notification into a single mapping.

    Later occurrences of a property name overwrite earlier ones.
    Entries that are not mappings are ignored.
    """
    if isinstance(raw, Mapping):
        return dict(raw)
    flat: dict[str, Any] = {}
    for entry in raw:
        if isinstance(entry, Mapping):
            flat.update(entry)
        else:
            logger.debug("Ignoring non-mapping property entry %r", entry)
    return flat


def event_topic(prefix: str, udn: str, service_id: str) -> str:
    return f"{prefix}/{udn}/{service_id}"


class EventRelay:
    """Publishes notifications for subscriptions known to the registry."""

    def __init__(self, ctx: BridgeContext) -> None:
        self._ctx = ctx

    async def relay(self, sid: str, raw: RawNotification) -> bool:
        """Publish *raw* for subscription *sid*.

        Returns ``False`` when *sid* belongs to no registered device
        (late NOTIFY after teardown) or when publishing failed.
        """
        found = self._ctx.registry.find_subscription(sid)
        if found is None:
            logger.debug("Dropping notification for unknown subscription %s", sid)
            return False
        record, subscription = found

        topic = event_topic(self._ctx.topic_prefix, record.udn, subscription.service_id)
        payload = json.dumps({"body": normalize(raw)})
        try:
            await self._ctx.mqtt.publish(
                topic,
                payload,
                retain=False,
                qos=self._ctx.settings.mqtt.qos,
            )
        except Exception:
            logger.exception("Failed to publish event to %s", topic)
            return False
        logger.debug("Relayed %s event to %s", record.descriptor.friendly_name, topic)
        return True
