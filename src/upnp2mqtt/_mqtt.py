"""MQTT client port and adapters.

The bridge only ever publishes, so :class:`MqttPort` is a single
``publish`` coroutine.  Three implementations are provided:

- MqttClient: aiomqtt-based client with LWT and reconnection
- MockMqttClient: test double that records calls
- NullMqttClient: silent no-op adapter

aiomqtt is imported inside ``MqttClient._connection_loop()`` so the
doubles work without it installed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from upnp2mqtt._settings import MqttSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WillConfig:
    """Last-Will-and-Testament configuration.

    Keeps ``aiomqtt.Will`` out of the rest of the code base; the real
    client translates it inside ``_connection_loop()``.
    """

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Port contract for publishing to the message bus."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters that own a connection to start and stop."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Null adapter
# ---------------------------------------------------------------------------


@dataclass
class NullMqttClient:
    """Silent no-op MQTT adapter."""

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        logger.debug("NullMqttClient.publish(%s) discarded", topic)


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """In-memory test double that records publishes.

    Set ``fail_with`` to make every publish raise, which exercises the
    fire-and-forget paths of the relay and the reporters.
    """

    published: list[tuple[str, str, bool, int]] = field(
        default_factory=list,
    )
    fail_with: Exception | None = None

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Record a publish call."""
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append((topic, payload, retain, qos))

    @property
    def publish_count(self) -> int:
        """Number of recorded publishes."""
        return len(self.published)

    def reset(self) -> None:
        """Clear all recorded data."""
        self.published.clear()

    def get_messages_for(
        self,
        topic: str,
    ) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production MQTT adapter backed by *aiomqtt*.

    A background task keeps the connection alive.  After a connection
    loss the task waits ``reconnect_interval`` seconds, doubling on
    every consecutive failure up to ``reconnect_max_interval``.
    Publishing while disconnected raises :class:`RuntimeError`; callers
    treat publication as fire-and-forget.
    """

    settings: MqttSettings
    will: WillConfig | None = None

    _client: Any = field(default=None, init=False, repr=False)
    _task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a message to the broker.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if self._client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await self._client.publish(topic, payload, retain=retain, qos=qos)
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def start(self) -> None:
        """Start the background connection loop."""
        if self._task is not None and not self._task.done():
            logger.debug("MqttClient.start() called while already running")
            return
        self._stopping = False
        self._task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Stop the connection loop.  Idempotent."""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._client = None
        self._connected.clear()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until the broker connection is up; ``False`` on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except TimeoutError:
            return False
        return True

    @property
    def is_connected(self) -> bool:
        """Whether the client is currently connected to the broker."""
        return self._connected.is_set()

    def _next_delay(self, failures: int) -> float:
        delay = self.settings.reconnect_interval * 2 ** max(failures - 1, 0)
        return min(delay, self.settings.reconnect_max_interval)

    async def _connection_loop(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        failures = 0
        while not self._stopping:
            try:
                password: str | None = None
                if self.settings.password is not None:
                    password = self.settings.password.get_secret_value()

                will: aiomqtt.Will | None = None
                if self.will is not None:
                    will = aiomqtt.Will(
                        topic=self.will.topic,
                        payload=self.will.payload,
                        qos=self.will.qos,
                        retain=self.will.retain,
                    )

                async with aiomqtt.Client(
                    hostname=self.settings.host,
                    port=self.settings.port,
                    username=self.settings.username,
                    password=password,
                    identifier=self.settings.client_id or None,
                    will=will,
                ) as client:
                    self._client = client
                    failures = 0
                    try:
                        self._connected.set()
                        logger.info(
                            "MQTT connected to %s:%d",
                            self.settings.host,
                            self.settings.port,
                        )
                        # Publish-only: drain inbound traffic to detect
                        # a dropped connection.
                        async for _message in client.messages:
                            pass
                    finally:
                        self._connected.clear()
                        self._client = None

            except asyncio.CancelledError:
                raise
            except Exception:
                failures += 1
                delay = self._next_delay(failures)
                logger.warning(
                    "MQTT connection lost, reconnecting in %.1fs",
                    delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)
