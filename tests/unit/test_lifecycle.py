"""Tests for upnp2mqtt._lifecycle: termination and fatal errors.

Test Techniques Used:
    - Scenario Testing: two devices with three subscriptions at shutdown
    - State-based Testing: shutdown event and exit code
    - Idempotence: repeated termination
    - Race Testing: a SUBSCRIBE completing between two terminations
"""

from __future__ import annotations

import asyncio
import logging
import signal

import pytest

from upnp2mqtt._cli import EXIT_OK, EXIT_RUNTIME_ERROR
from upnp2mqtt._context import BridgeContext
from upnp2mqtt._discovery import DiscoveryEvent
from upnp2mqtt._lifecycle import LifecycleController
from upnp2mqtt._pipeline import Pipeline
from upnp2mqtt._worker import DiscoveryWorker
from upnp2mqtt.testing import (
    MockDescriptionClient,
    MockSubscriptionClient,
    make_description,
)


@pytest.fixture
async def populated(
    bridge_context: BridgeContext,
    mock_descriptions: MockDescriptionClient,
    mock_subscriptions: MockSubscriptionClient,
) -> LifecycleController:
    """Device A with two subscriptions, device B with one."""
    mock_descriptions.documents["http://a/desc.xml"] = make_description(
        "uuid:A",
        ["urn:svc:1", "urn:svc:2"],
    )
    mock_descriptions.documents["http://b/desc.xml"] = make_description("uuid:B", ["urn:svc:1"])
    pipeline = Pipeline(
        bridge_context,
        descriptions=mock_descriptions,
        subscriptions=mock_subscriptions,
    )
    await pipeline.process(DiscoveryEvent(usn="a", location="http://a/desc.xml"))
    await pipeline.process(DiscoveryEvent(usn="b", location="http://b/desc.xml"))
    return LifecycleController(bridge_context, pipeline.manager)


class TestTerminate:
    """Technique: Scenario Testing."""

    async def test_fires_one_unsubscribe_per_subscription(
        self,
        populated: LifecycleController,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        fired = populated.terminate("SIGTERM")

        assert fired == 3
        assert sorted(mock_subscriptions.unsubscribed_nowait) == [
            "uuid:sub-1",
            "uuid:sub-2",
            "uuid:sub-3",
        ]
        assert bridge_context.shutdown_requested
        assert populated.exit_code == EXIT_OK

    async def test_idempotent(
        self,
        populated: LifecycleController,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        populated.terminate("SIGTERM")
        assert populated.terminate("SIGINT") == 0
        assert len(mock_subscriptions.unsubscribed_nowait) == 3


class TestLateSubscriptions:
    """Technique: Race Testing."""

    async def test_second_terminate_releases_subscriptions_added_since(
        self,
        bridge_context: BridgeContext,
        mock_descriptions: MockDescriptionClient,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        mock_descriptions.documents["http://c/desc.xml"] = make_description(
            "uuid:C",
            ["urn:svc:1", "urn:svc:2"],
        )
        gate = asyncio.Event()
        mock_subscriptions.subscribe_gates["http://c/evt/2"] = gate
        pipeline = Pipeline(
            bridge_context,
            descriptions=mock_descriptions,
            subscriptions=mock_subscriptions,
        )
        controller = LifecycleController(bridge_context, pipeline.manager)
        worker = DiscoveryWorker(bridge_context, pipeline)

        task = asyncio.create_task(
            worker.handle(DiscoveryEvent(usn="c", location="http://c/desc.xml")),
        )
        async with asyncio.timeout(1.0):
            while len(mock_subscriptions.subscribe_calls) < 2:
                await asyncio.sleep(0)

        assert controller.terminate("SIGTERM") == 1
        gate.set()
        await task
        assert controller.terminate("shutdown") == 1

        record = bridge_context.registry.get("c")
        assert record is not None
        assert sorted(mock_subscriptions.unsubscribed_nowait) == sorted(record.subscriptions)
        assert sorted(record.subscriptions) == ["uuid:sub-1", "uuid:sub-2"]

class TestFatal:
    """Technique: State-based Testing."""

    async def test_fatal_releases_and_sets_exit_code(
        self,
        populated: LifecycleController,
        mock_subscriptions: MockSubscriptionClient,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.CRITICAL, logger="upnp2mqtt._lifecycle"):
            populated.fatal(RuntimeError("boom"), "worker crashed")

        assert populated.exit_code == EXIT_RUNTIME_ERROR
        assert len(mock_subscriptions.unsubscribed_nowait) == 3
        assert "worker crashed" in caplog.text

    async def test_loop_exception_with_error_is_fatal(
        self,
        populated: LifecycleController,
        bridge_context: BridgeContext,
    ) -> None:
        loop = asyncio.get_running_loop()
        populated._on_loop_exception(  # noqa: SLF001
            loop,
            {"message": "Task exception was never retrieved", "exception": KeyError("x")},
        )
        assert populated.exit_code == EXIT_RUNTIME_ERROR
        assert bridge_context.shutdown_requested

    async def test_loop_message_without_error_is_not_fatal(
        self,
        populated: LifecycleController,
        bridge_context: BridgeContext,
    ) -> None:
        loop = asyncio.get_running_loop()
        populated._on_loop_exception(loop, {"message": "unclosed transport"})  # noqa: SLF001
        assert populated.exit_code == EXIT_OK
        assert not bridge_context.shutdown_requested


class TestInstall:
    """Technique: State-based Testing."""

    async def test_installs_exception_handler(self, populated: LifecycleController) -> None:
        loop = asyncio.get_running_loop()
        previous = loop.get_exception_handler()
        try:
            populated.install(loop)
            assert loop.get_exception_handler() == populated._on_loop_exception  # noqa: SLF001
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            loop.set_exception_handler(previous)
