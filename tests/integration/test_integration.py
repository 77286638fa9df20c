"""Integration tests: whole-bridge scenarios.

Runs a complete :class:`Bridge` through :class:`BridgeHarness` against
in-memory discovery, description, GENA and MQTT doubles: announce a
device, receive its events, lose it, and shut down.

Test Techniques Used:
    - Integration Testing: end-to-end life cycle via BridgeHarness
    - State-based Testing: registry, retry schedule and MQTT traffic
    - Scenario Testing: partial failures, updates, lost leases
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

import pytest

from upnp2mqtt._discovery import DiscoveryKind
from upnp2mqtt._registry import DeviceState
from upnp2mqtt.testing import BridgeHarness, make_description

pytestmark = pytest.mark.integration

USN = "uuid:A::upnp:rootdevice"
LOCATION = "http://192.168.1.20/desc.xml"
MOVED = "http://192.168.1.21/desc.xml"
SERVICE_IDS = [
    "urn:upnp-org:serviceId:AVTransport",
    "urn:upnp-org:serviceId:RenderingControl",
    "urn:upnp-org:serviceId:ConnectionManager",
]


@pytest.fixture
async def harness() -> AsyncIterator[BridgeHarness]:
    harness = BridgeHarness.create()
    harness.descriptions.documents[LOCATION] = make_description(
        "uuid:A",
        SERVICE_IDS,
        friendly_name="Living Room",
    )
    harness.descriptions.documents[MOVED] = make_description("uuid:A", SERVICE_IDS[:1])
    await harness.start()
    yield harness
    if not harness.shutdown_event.is_set():
        await harness.stop()


def _is_active(harness: BridgeHarness, location: str = LOCATION) -> bool:
    record = harness.registry.get(USN)
    return (
        record is not None
        and record.state is DeviceState.ACTIVE
        and record.location == location
    )


def _payloads(harness: BridgeHarness, topic: str) -> list[str]:
    return [payload for payload, _, _ in harness.mqtt.get_messages_for(topic)]


async def _activate(harness: BridgeHarness) -> list[str]:
    harness.announce(USN, LOCATION)
    await harness.wait_for(lambda: _is_active(harness))
    record = harness.registry.get(USN)
    assert record is not None
    return list(record.subscriptions)


class TestDiscoverAndRelay:
    """Technique: Integration Testing."""

    async def test_events_are_relayed_per_service(self, harness: BridgeHarness) -> None:
        sids = await _activate(harness)
        assert len(sids) == 3

        await harness.subscriptions.deliver(
            sids[1],
            [{"Volume": "12"}, {"Mute": "0"}],
        )

        topic = "upnp/uuid:A/urn:upnp-org:serviceId:RenderingControl"
        messages = harness.mqtt.get_messages_for(topic)
        assert messages == [(json.dumps({"body": {"Volume": "12", "Mute": "0"}}), False, 1)]

    async def test_device_announced_available(self, harness: BridgeHarness) -> None:
        await _activate(harness)
        assert _payloads(harness, "upnp/uuid:A") == ['{"available": true}']

    async def test_single_property_mapping_is_relayed(self, harness: BridgeHarness) -> None:
        sids = await _activate(harness)

        await harness.subscriptions.deliver(sids[0], {"TransportState": "PLAYING"})

        topic = "upnp/uuid:A/urn:upnp-org:serviceId:AVTransport"
        assert json.loads(_payloads(harness, topic)[0]) == {
            "body": {"TransportState": "PLAYING"},
        }

    async def test_repeated_announcements_fetch_once(self, harness: BridgeHarness) -> None:
        await _activate(harness)
        harness.announce(USN, LOCATION, DiscoveryKind.AVAILABLE)
        harness.announce("uuid:A::urn:schemas-upnp-org:device:MediaRenderer:1", LOCATION)
        await harness.wait_for(lambda: len(harness.bridge.context.queue) == 0)  # type: ignore[union-attr]
        await asyncio.sleep(0.05)

        assert harness.descriptions.calls == [LOCATION]
        assert len(harness.subscriptions.subscribe_calls) == 3


class TestPartialFailure:
    """Technique: Scenario Testing."""

    async def test_rollback_then_retry(self, harness: BridgeHarness) -> None:
        failing = "http://192.168.1.20/evt/3"
        harness.subscriptions.subscribe_failures[failing] = OSError("HTTP 500")
        queue = harness.bridge.context.queue  # type: ignore[union-attr]

        harness.announce(USN, LOCATION)
        await harness.wait_for(lambda: queue.is_parked(USN))

        assert sorted(harness.subscriptions.unsubscribed) == ["uuid:sub-1", "uuid:sub-2"]
        assert USN not in harness.registry
        errors = [json.loads(p) for p in _payloads(harness, "upnp/error")]
        assert errors[0]["error_type"] == "subscribe_error"
        assert errors[0]["device"] == USN

        harness.subscriptions.subscribe_failures.clear()
        await asyncio.sleep(0.05)
        assert not _is_active(harness)

        harness.clock.advance(1.0)
        await harness.wait_for(lambda: _is_active(harness))
        assert queue.attempts(USN) == 0
        assert len(harness.descriptions.calls) == 2

    async def test_fetch_failure_is_retried(self, harness: BridgeHarness) -> None:
        document = harness.descriptions.documents[LOCATION]
        harness.descriptions.documents[LOCATION] = OSError("connection refused")
        queue = harness.bridge.context.queue  # type: ignore[union-attr]

        harness.announce(USN, LOCATION)
        await harness.wait_for(lambda: queue.is_parked(USN))
        harness.descriptions.documents[LOCATION] = document

        harness.clock.advance(1.0)
        await harness.wait_for(lambda: _is_active(harness))


class TestDeviceChanges:
    """Technique: Scenario Testing."""

    async def test_update_tears_down_before_resubscribing(self, harness: BridgeHarness) -> None:
        old_sids = await _activate(harness)

        harness.announce(USN, MOVED, DiscoveryKind.UPDATE)
        await harness.wait_for(lambda: _is_active(harness, MOVED))

        assert sorted(harness.subscriptions.unsubscribed) == sorted(old_sids)
        assert harness.subscriptions.opened[-1] == "http://192.168.1.21/evt/1"
        assert _payloads(harness, "upnp/uuid:A") == [
            '{"available": true}',
            '{"available": false}',
            '{"available": true}',
        ]

    async def test_byebye_unsubscribes_and_drops_late_events(
        self,
        harness: BridgeHarness,
    ) -> None:
        sids = await _activate(harness)

        harness.announce(USN, LOCATION, DiscoveryKind.UNAVAILABLE)
        await harness.wait_for(lambda: USN not in harness.registry)

        assert sorted(harness.subscriptions.unsubscribed) == sorted(sids)
        assert _payloads(harness, "upnp/uuid:A")[-1] == '{"available": false}'

        published = harness.mqtt.publish_count
        await harness.subscriptions.deliver(sids[0], {"TransportState": "STOPPED"})
        assert harness.mqtt.publish_count == published

    async def test_failed_renewal_requeues_device(self, harness: BridgeHarness) -> None:
        sids = await _activate(harness)
        queue = harness.bridge.context.queue  # type: ignore[union-attr]

        await harness.subscriptions.fail_renewal(sids[1])

        assert USN not in harness.registry
        assert sorted(harness.subscriptions.unsubscribed) == sorted(sids)
        assert queue.is_parked(USN)
        errors = [json.loads(p) for p in _payloads(harness, "upnp/error")]
        assert errors[-1]["error_type"] == "renewal_error"

        harness.clock.advance(1.0)
        await harness.wait_for(lambda: _is_active(harness))


class TestShutdown:
    """Technique: Integration Testing."""

    async def test_shutdown_releases_subscriptions(self, harness: BridgeHarness) -> None:
        sids = await _activate(harness)

        exit_code = await harness.stop()

        assert exit_code == 0
        assert sorted(harness.subscriptions.unsubscribed_nowait) == sorted(sids)
        assert _payloads(harness, "upnp/uuid:A")[-1] == '{"available": false}'
        assert _payloads(harness, "upnp/status")[-1] == "offline"

    async def test_discovery_ignored_after_shutdown(self, harness: BridgeHarness) -> None:
        await harness.stop()
        harness.announce(USN, LOCATION)
        await asyncio.sleep(0.02)
        assert harness.descriptions.calls == []
