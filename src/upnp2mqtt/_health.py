"""Bridge heartbeat and per-device availability over MQTT.

Topic layout::

    {prefix}/status     ← bridge heartbeat (retained JSON), LWT "offline"
    {prefix}/{udn}      ← device availability (retained JSON)

Availability payload::

    {"available": true}

Heartbeat payload::

    {
        "status": "online",
        "uptime_s": 3600.0,
        "version": "0.1.0",
        "devices": ["uuid:RENDERER-1", "uuid:SERVER-2"]
    }

All publication is retained, QoS 1 and fire-and-forget.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field

from upnp2mqtt._clock import ClockPort
from upnp2mqtt._mqtt import MqttPort, WillConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HeartbeatPayload:
    """Immutable bridge status snapshot."""

    status: str
    uptime_s: float
    version: str
    devices: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self))


def build_will_config(topic_prefix: str) -> WillConfig:
    """LWT publishing ``"offline"`` to ``{topic_prefix}/status``."""
    return WillConfig(
        topic=f"{topic_prefix}/status",
        payload="offline",
        qos=1,
        retain=True,
    )


def availability_payload(available: bool) -> str:
    return json.dumps({"available": available})


@dataclass
class HealthReporter:
    """Publishes the bridge heartbeat and per-device availability.

    Parameters
    ----------
    mqtt:
        MQTT port used for publishing.
    topic_prefix:
        Base prefix for health topics (``"upnp"`` by default).
    version:
        Bridge version included in heartbeats.
    clock:
        Monotonic clock for uptime measurement.
    """

    mqtt: MqttPort
    topic_prefix: str
    version: str
    clock: ClockPort
    _start_time: float = field(init=False, repr=False)
    _devices: set[str] = field(init=False, default_factory=set, repr=False)

    def __post_init__(self) -> None:
        self._start_time = self.clock.now()

    @property
    def devices(self) -> frozenset[str]:
        """UDNs currently announced as available."""
        return frozenset(self._devices)

    async def publish_device_available(self, udn: str) -> None:
        """Announce ``{"available": true}`` on ``{prefix}/{udn}``."""
        await self._safe_publish(f"{self.topic_prefix}/{udn}", availability_payload(True))
        self._devices.add(udn)

    async def publish_device_unavailable(self, udn: str) -> None:
        """Announce ``{"available": false}`` on ``{prefix}/{udn}``."""
        await self._safe_publish(f"{self.topic_prefix}/{udn}", availability_payload(False))
        self._devices.discard(udn)

    async def publish_heartbeat(self) -> None:
        payload = HeartbeatPayload(
            status="online",
            uptime_s=self.clock.now() - self._start_time,
            version=self.version,
            devices=sorted(self._devices),
        )
        topic = f"{self.topic_prefix}/status"
        logger.debug("Publishing heartbeat to %s", topic)
        await self._safe_publish(topic, payload.to_json())

    async def shutdown(self) -> None:
        """Announce every tracked device and the bridge itself offline."""
        logger.info("Health reporter shutting down, publishing offline")
        for udn in sorted(self._devices):
            await self._safe_publish(f"{self.topic_prefix}/{udn}", availability_payload(False))
        await self._safe_publish(f"{self.topic_prefix}/status", "offline")
        self._devices.clear()

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self.mqtt.publish(topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish health to %s", topic)
