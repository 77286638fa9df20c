"""Error taxonomy and structured error publication.

Every failure the bridge recovers from is one of four exception types,
all rooted at :class:`BridgeError`:

- :class:`FetchError`: description could not be fetched or parsed.
- :class:`SubscribeError`: a SUBSCRIBE for one service failed.
- :class:`RenewalError`: an active lease could not be renewed.
- :class:`UnsubscribeError`: an UNSUBSCRIBE was not acknowledged.

Failures are contained at the device boundary: they are logged and
published to ``{prefix}/error`` but never abort the discovery worker.

Payload schema::

    {
        "error_type": "subscribe_error",
        "message": "Human-readable error description",
        "device": "uuid:...::upnp:rootdevice" | null,
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {}
    }

Publication is fire-and-forget, QoS 1 and not retained.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

from upnp2mqtt._mqtt import MqttPort

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BridgeError(Exception):
    """Base class for recoverable per-device failures."""


class FetchError(BridgeError):
    """Network or parse failure retrieving a device description."""

    def __init__(self, location: str, reason: str) -> None:
        super().__init__(f"{location}: {reason}")
        self.location = location
        self.reason = reason


class SubscribeError(BridgeError):
    """Opening a subscription for one service of a device failed.

    ``registered`` is the number of sibling subscriptions that were
    already created for the device and still need to be rolled back.
    """

    def __init__(
        self,
        usn: str,
        service_id: str,
        reason: str,
        *,
        registered: int = 0,
    ) -> None:
        super().__init__(f"{usn} {service_id}: {reason}")
        self.usn = usn
        self.service_id = service_id
        self.reason = reason
        self.registered = registered


class RenewalError(BridgeError):
    """An active subscription's lease could not be renewed."""

    def __init__(self, sid: str, reason: str) -> None:
        super().__init__(f"{sid}: {reason}")
        self.sid = sid
        self.reason = reason


class UnsubscribeError(BridgeError):
    """A teardown request was not acknowledged."""

    def __init__(self, sid: str, reason: str) -> None:
        super().__init__(f"{sid}: {reason}")
        self.sid = sid
        self.reason = reason


ERROR_TYPES: dict[type[Exception], str] = {
    FetchError: "fetch_error",
    SubscribeError: "subscribe_error",
    RenewalError: "renewal_error",
    UnsubscribeError: "unsubscribe_error",
}

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload."""

    error_type: str
    message: str
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


def build_error_payload(
    error: Exception,
    *,
    device: str | None = None,
    details: dict[str, object] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    The ``error_type`` is looked up by exact class in
    :data:`ERROR_TYPES`; anything else is reported as ``"error"``.
    """
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=ERROR_TYPES.get(type(error), "error"),
        message=str(error),
        device=device,
        timestamp=now.isoformat(),
        details=details or {},
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class ErrorPublisher:
    """Publishes structured error payloads to ``{topic_prefix}/error``.

    Failures while building or publishing the report are logged and
    swallowed; an error report must never take down the worker loop.
    """

    mqtt: MqttPort
    topic_prefix: str
    clock: Callable[[], datetime] | None = field(default=None, repr=False)

    async def publish(
        self,
        error: Exception,
        *,
        device: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        try:
            payload = build_error_payload(
                error,
                device=device,
                details=details,
                clock=self.clock,
            )
            payload_json = payload.to_json()
        except Exception:
            logger.exception(
                "Failed to build error payload for %r (device=%s)",
                error,
                device,
            )
            return

        topic = f"{self.topic_prefix}/error"
        try:
            await self.mqtt.publish(topic, payload_json, retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish error to %s", topic)
