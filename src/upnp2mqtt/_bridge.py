"""Bridge orchestrator: the composition root of upnp2mqtt.

:class:`Bridge` wires the adapters (SSDP, HTTP descriptions, GENA,
MQTT) to the pipeline and runs the full life cycle::

    bridge = Bridge(version="0.1.0")
    bridge.cli()          # parse flags, then run until SIGTERM/SIGINT

Every adapter can be injected into :meth:`Bridge._run_async`, which is
how the test suite drives a whole bridge against in-memory doubles.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable, Coroutine
from typing import Any

from upnp2mqtt._clock import ClockPort, SystemClock
from upnp2mqtt._context import BridgeContext
from upnp2mqtt._description import DescriptionPort, HttpDescriptionClient
from upnp2mqtt._discovery import DiscoveryEvent, DiscoveryKind, DiscoveryPort, SsdpDiscovery
from upnp2mqtt._errors import ErrorPublisher
from upnp2mqtt._gena import GenaClient, SubscriptionPort
from upnp2mqtt._health import HealthReporter, build_will_config
from upnp2mqtt._lifecycle import LifecycleController
from upnp2mqtt._logging import configure_logging
from upnp2mqtt._mqtt import MqttClient, MqttLifecycle, MqttPort
from upnp2mqtt._pipeline import Pipeline
from upnp2mqtt._settings import Settings
from upnp2mqtt._worker import DiscoveryWorker

logger = logging.getLogger(__name__)


class Bridge:
    """Discovers UPnP devices and relays their events to MQTT."""

    def __init__(
        self,
        name: str = "upnp2mqtt",
        version: str = "0.0.0",
        *,
        description: str = "UPnP eventing to MQTT bridge",
        settings_class: type[Settings] = Settings,
        heartbeat_interval: float | None = 60.0,
    ) -> None:
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class
        self._heartbeat_interval = heartbeat_interval
        self._tasks: set[asyncio.Task[None]] = set()
        self.context: BridgeContext | None = None

    # -- Entrypoints --------------------------------------------------------

    def run(self, **kwargs: Any) -> int:
        """Run the bridge synchronously; returns the process exit code.

        Keyword arguments are forwarded to :meth:`_run_async`.
        """
        exit_code = 0
        with contextlib.suppress(KeyboardInterrupt):
            exit_code = asyncio.run(self._run_async(**kwargs))
        return exit_code

    def cli(self) -> None:
        """Build and invoke the Typer command line."""
        from upnp2mqtt._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    async def _run_async(
        self,
        *,
        settings: Settings | None = None,
        mqtt: MqttPort | None = None,
        discovery: DiscoveryPort | None = None,
        descriptions: DescriptionPort | None = None,
        subscriptions: SubscriptionPort | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> int:
        """Full life cycle of one bridge run.

        1. Bootstrap settings, logging, adapters and shared context.
        2. Start the discovery worker and hook discovery events up.
        3. Block until shutdown (signal, fatal error or injected event).
        4. Release subscriptions, announce offline, close adapters.

        Adapters not injected are created from settings and closed on
        the way out.  Signal handlers are only installed when no
        *shutdown_event* is injected.
        """
        # --- Phase 1: Bootstrap ---
        resolved_settings = settings if settings is not None else self._settings_class()
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        prefix = resolved_settings.mqtt.topic_prefix
        resolved_clock = clock if clock is not None else SystemClock()
        mqtt = self._create_mqtt(mqtt, resolved_settings, prefix)

        owned: list[Callable[[], Coroutine[Any, Any, None]]] = []
        if descriptions is None:
            http = HttpDescriptionClient(timeout=resolved_settings.eventing.request_timeout)
            owned.append(http.aclose)
            descriptions = http
        gena: GenaClient | None = None
        if subscriptions is None:
            gena = self._create_gena(resolved_settings)
            owned.insert(0, gena.close)
            subscriptions = gena
        if discovery is None:
            discovery = SsdpDiscovery(
                search_target=resolved_settings.discovery.search_target,
                mx=resolved_settings.discovery.mx,
                search_interval=resolved_settings.discovery.search_interval,
            )

        ctx = BridgeContext(
            settings=resolved_settings,
            mqtt=mqtt,
            clock=resolved_clock,
            shutdown_event=shutdown_event if shutdown_event is not None else asyncio.Event(),
            health=HealthReporter(
                mqtt=mqtt,
                topic_prefix=prefix,
                version=self._version,
                clock=resolved_clock,
            ),
            errors=ErrorPublisher(mqtt=mqtt, topic_prefix=prefix),
        )
        self.context = ctx
        pipeline = Pipeline(ctx, descriptions=descriptions, subscriptions=subscriptions)
        lifecycle = LifecycleController(ctx, pipeline.manager)

        if isinstance(mqtt, MqttLifecycle):
            await mqtt.start()
        if isinstance(mqtt, MqttClient) and not await mqtt.wait_connected(
            timeout=resolved_settings.eventing.request_timeout,
        ):
            logger.warning("MQTT broker not reachable yet, continuing")
        if gena is not None:
            await gena.start()

        # --- Phase 2: Wire discovery ---
        if shutdown_event is None:
            lifecycle.install()

        discovery.on_event(lambda event: self._on_discovery(ctx, pipeline, event))
        worker = DiscoveryWorker(ctx, pipeline)
        worker_task = asyncio.create_task(worker.run())
        worker_task.add_done_callback(
            lambda task: self._on_worker_done(task, lifecycle),
        )
        await discovery.start()

        # --- Phase 3: Run ---
        await ctx.health.publish_heartbeat()
        heartbeat_task = self._start_heartbeat_task(ctx.health)
        logger.info("%s v%s running, topic prefix '%s'", self._name, self._version, prefix)

        await ctx.shutdown_event.wait()

        # --- Phase 4: Tear down ---
        await discovery.stop()
        pending = [worker_task, *self._tasks]
        if heartbeat_task is not None:
            pending.append(heartbeat_task)
        await self._cancel_tasks(pending)

        fired = lifecycle.terminate("shutdown")
        if fired:
            logger.info("Fired %d unsubscribe request(s)", fired)
        await ctx.health.shutdown()

        for close in owned:
            try:
                await close()
            except Exception:
                logger.exception("Error closing adapter")

        if isinstance(mqtt, MqttLifecycle):
            await mqtt.stop()

        logger.info("Shutdown complete")
        return lifecycle.exit_code

    # --- _run_async helpers ------------------------------------------------

    def _create_mqtt(
        self,
        mqtt: MqttPort | None,
        settings: Settings,
        prefix: str,
    ) -> MqttPort:
        """Create the MQTT client, or return the injected one.

        Without a configured ``client_id`` one is generated from the
        bridge name and a random suffix.
        """
        if mqtt is not None:
            return mqtt
        mqtt_settings = settings.mqtt
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"{self._name}-{uuid.uuid4().hex[:8]}"},
            )
        return MqttClient(settings=mqtt_settings, will=build_will_config(prefix))

    @staticmethod
    def _create_gena(settings: Settings) -> GenaClient:
        eventing = settings.eventing
        return GenaClient(
            callback_host=eventing.callback_host,
            callback_port=eventing.callback_port,
            lease_seconds=eventing.lease_seconds,
            request_timeout=eventing.request_timeout,
            shutdown_grace=eventing.shutdown_grace,
        )

    def _on_discovery(
        self,
        ctx: BridgeContext,
        pipeline: Pipeline,
        event: DiscoveryEvent,
    ) -> None:
        """Route a discovery event: queue it, or handle it out of band."""
        if ctx.shutdown_requested:
            return
        match event.kind:
            case DiscoveryKind.FOUND | DiscoveryKind.AVAILABLE:
                ctx.queue.put(event)
            case DiscoveryKind.UPDATE:
                self._spawn(pipeline.handle_update(event), event.usn)
            case DiscoveryKind.UNAVAILABLE:
                self._spawn(pipeline.handle_unavailable(event), event.usn)

    def _spawn(self, coro: Coroutine[Any, Any, None], usn: str) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[None]) -> None:
            self._tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    "Out-of-band handling of %s failed: %s",
                    usn,
                    finished.exception(),
                )

        task.add_done_callback(_done)

    @staticmethod
    def _on_worker_done(task: asyncio.Task[None], lifecycle: LifecycleController) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            lifecycle.fatal(error, "discovery worker crashed")

    def _start_heartbeat_task(
        self,
        health: HealthReporter,
    ) -> asyncio.Task[None] | None:
        if self._heartbeat_interval is None:
            return None
        return asyncio.create_task(
            self._heartbeat_loop(health, self._heartbeat_interval),
        )

    @staticmethod
    async def _heartbeat_loop(health: HealthReporter, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await health.publish_heartbeat()

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task[None]]) -> None:
        """Cancel tasks and wait for them to finish."""
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(
                result,
                asyncio.CancelledError,
            ):
                logger.error("Task error during shutdown: %s", result)
