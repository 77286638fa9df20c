"""Tests for upnp2mqtt._subscriptions: subscribe-all, teardown, renewal.

Test Techniques Used:
    - State Transition Testing: SUBSCRIBING → ACTIVE → UNSUBSCRIBING → REMOVED
    - Fault Injection: SUBSCRIBE, UNSUBSCRIBE and renewal failures
    - Mock-based Isolation: MockSubscriptionClient records GENA traffic
"""

from __future__ import annotations

import json

import pytest

from upnp2mqtt._context import BridgeContext
from upnp2mqtt._description import DeviceDescriptor, ServiceDescriptor
from upnp2mqtt._discovery import DiscoveryEvent
from upnp2mqtt._errors import RenewalError, SubscribeError
from upnp2mqtt._gena import RawNotification, SubscriptionErrorKind
from upnp2mqtt._registry import DeviceRecord, DeviceState
from upnp2mqtt._subscriptions import SubscriptionManager
from upnp2mqtt.testing import MockMqttClient, MockSubscriptionClient

USN = "uuid:A::upnp:rootdevice"
LOCATION = "http://192.168.1.20/desc.xml"
SERVICES = tuple(
    ServiceDescriptor(f"urn:svc:{n}", f"http://192.168.1.20/evt/{n}") for n in (1, 2, 3)
)


def _registered_record(ctx: BridgeContext) -> DeviceRecord:
    record = DeviceRecord(
        event=DiscoveryEvent(usn=USN, location=LOCATION),
        descriptor=DeviceDescriptor(udn="uuid:A", friendly_name="A", services=SERVICES),
    )
    ctx.registry.set(USN, record)
    ctx.guard.add(LOCATION)
    return record


class _Recorder:
    def __init__(self) -> None:
        self.messages: list[tuple[str, RawNotification]] = []
        self.lost: list[tuple[DeviceRecord, RenewalError]] = []

    async def on_message(self, sid: str, raw: RawNotification) -> None:
        self.messages.append((sid, raw))

    async def on_device_lost(self, record: DeviceRecord, error: RenewalError) -> None:
        self.lost.append((record, error))


@pytest.fixture
def recorder() -> _Recorder:
    return _Recorder()


@pytest.fixture
def manager(
    bridge_context: BridgeContext,
    mock_subscriptions: MockSubscriptionClient,
    recorder: _Recorder,
) -> SubscriptionManager:
    return SubscriptionManager(
        bridge_context,
        mock_subscriptions,
        on_message=recorder.on_message,
        on_device_lost=recorder.on_device_lost,
        lease_seconds=600,
    )


class TestSubscribeAll:
    """Technique: State Transition Testing."""

    async def test_subscribes_in_order_and_activates(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        record = _registered_record(bridge_context)

        await manager.subscribe_all(record, SERVICES)

        assert mock_subscriptions.subscribe_calls == [s.event_url for s in SERVICES]
        assert list(record.subscriptions) == ["uuid:sub-1", "uuid:sub-2", "uuid:sub-3"]
        assert [s.service_id for s in record.subscriptions.values()] == [
            "urn:svc:1",
            "urn:svc:2",
            "urn:svc:3",
        ]
        assert record.state is DeviceState.ACTIVE
        assert all(h.lease_seconds == 600 for h in mock_subscriptions.handles.values())

    async def test_device_without_services_is_active(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
    ) -> None:
        record = _registered_record(bridge_context)
        await manager.subscribe_all(record, ())
        assert record.state is DeviceState.ACTIVE
        assert record.subscriptions == {}

    async def test_failure_stops_at_failing_service(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        """Two of three succeed; the error says how many to roll back."""
        record = _registered_record(bridge_context)
        mock_subscriptions.subscribe_failures[SERVICES[2].event_url] = OSError("HTTP 500")

        with pytest.raises(SubscribeError) as excinfo:
            await manager.subscribe_all(record, SERVICES)

        assert excinfo.value.registered == 2
        assert excinfo.value.service_id == "urn:svc:3"
        assert len(record.subscriptions) == 2
        assert record.state is DeviceState.SUBSCRIBING

    async def test_empty_sid_is_a_failure(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        record = _registered_record(bridge_context)
        mock_subscriptions.empty_sid_urls.add(SERVICES[0].event_url)

        with pytest.raises(SubscribeError, match="no subscription id"):
            await manager.subscribe_all(record, SERVICES)
        assert record.subscriptions == {}

    async def test_notifications_reach_on_message(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
        recorder: _Recorder,
    ) -> None:
        record = _registered_record(bridge_context)
        await manager.subscribe_all(record, SERVICES[:1])

        await mock_subscriptions.deliver("uuid:sub-1", {"Volume": "3"})

        assert recorder.messages == [("uuid:sub-1", {"Volume": "3"})]


class TestUnsubscribeAll:
    """Technique: State Transition Testing and Fault Injection."""

    async def test_rolls_back_partial_subscription(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        record = _registered_record(bridge_context)
        mock_subscriptions.subscribe_failures[SERVICES[2].event_url] = OSError("HTTP 500")
        with pytest.raises(SubscribeError):
            await manager.subscribe_all(record, SERVICES)

        removed = await manager.unsubscribe_all(USN)

        assert removed is record
        assert sorted(mock_subscriptions.unsubscribed) == ["uuid:sub-1", "uuid:sub-2"]
        assert USN not in bridge_context.registry
        assert LOCATION not in bridge_context.guard
        assert record.subscriptions == {}
        assert record.state is DeviceState.REMOVED

    async def test_unknown_usn_returns_none(self, manager: SubscriptionManager) -> None:
        assert await manager.unsubscribe_all("uuid:nobody") is None

    async def test_unsubscribe_failure_logged_and_published(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
        mock_mqtt: MockMqttClient,
    ) -> None:
        record = _registered_record(bridge_context)
        await manager.subscribe_all(record, SERVICES[:2])
        mock_subscriptions.unsubscribe_failures[SERVICES[0].event_url] = OSError("gone")

        await manager.unsubscribe_all(USN)

        assert USN not in bridge_context.registry
        errors = [json.loads(p) for p, _, _ in mock_mqtt.get_messages_for("test/error")]
        assert [e["error_type"] for e in errors] == ["unsubscribe_error"]
        assert errors[0]["device"] == USN

    async def test_nowait_fires_without_removing(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        record = _registered_record(bridge_context)
        await manager.subscribe_all(record, SERVICES)

        assert manager.unsubscribe_all_nowait(USN) == 3
        assert mock_subscriptions.unsubscribed_nowait == [
            "uuid:sub-1",
            "uuid:sub-2",
            "uuid:sub-3",
        ]
        assert record.state is DeviceState.UNSUBSCRIBING
        assert manager.unsubscribe_all_nowait("uuid:nobody") == 0

    async def test_nowait_skips_released_sids(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
    ) -> None:
        record = _registered_record(bridge_context)
        await manager.subscribe_all(record, SERVICES)
        released = {"uuid:sub-2"}

        assert manager.unsubscribe_all_nowait(USN, released) == 2
        assert mock_subscriptions.unsubscribed_nowait == ["uuid:sub-1", "uuid:sub-3"]
        assert released == {"uuid:sub-1", "uuid:sub-2", "uuid:sub-3"}
        assert manager.unsubscribe_all_nowait(USN, released) == 0


class TestRenewalFailure:
    """Technique: Fault Injection."""

    async def test_tears_down_every_subscription_of_the_device(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
        recorder: _Recorder,
    ) -> None:
        record = _registered_record(bridge_context)
        await manager.subscribe_all(record, SERVICES[:2])

        await mock_subscriptions.fail_renewal("uuid:sub-2")

        assert sorted(mock_subscriptions.unsubscribed) == ["uuid:sub-1", "uuid:sub-2"]
        assert USN not in bridge_context.registry
        assert LOCATION not in bridge_context.guard
        assert len(recorder.lost) == 1
        lost_record, error = recorder.lost[0]
        assert lost_record is record
        assert error.sid == "uuid:sub-2"

    async def test_unknown_sid_ignored(
        self,
        manager: SubscriptionManager,
        recorder: _Recorder,
    ) -> None:
        await manager._handle_error(  # noqa: SLF001
            "uuid:stale",
            SubscriptionErrorKind.RESUBSCRIBE,
            RuntimeError("gone"),
        )
        assert recorder.lost == []

    async def test_other_error_kinds_only_logged(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
        recorder: _Recorder,
    ) -> None:
        record = _registered_record(bridge_context)
        await manager.subscribe_all(record, SERVICES[:1])

        await mock_subscriptions.handles["uuid:sub-1"].fail(
            SubscriptionErrorKind.UNSUBSCRIBE,
            RuntimeError("late"),
        )

        assert USN in bridge_context.registry
        assert recorder.lost == []

    async def test_second_failure_after_teardown_is_noop(
        self,
        manager: SubscriptionManager,
        bridge_context: BridgeContext,
        mock_subscriptions: MockSubscriptionClient,
        recorder: _Recorder,
    ) -> None:
        record = _registered_record(bridge_context)
        await manager.subscribe_all(record, SERVICES[:2])

        await mock_subscriptions.fail_renewal("uuid:sub-1")
        await mock_subscriptions.fail_renewal("uuid:sub-2")

        assert len(recorder.lost) == 1
