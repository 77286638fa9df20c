"""upnp2mqtt.

Bridges UPnP device eventing (SSDP discovery, GENA subscriptions) to MQTT.
"""

from importlib.metadata import PackageNotFoundError, version

from upnp2mqtt._bridge import Bridge
from upnp2mqtt._clock import ClockPort, SystemClock
from upnp2mqtt._context import BridgeContext
from upnp2mqtt._description import (
    DescriptionPort,
    DeviceDescriptor,
    HttpDescriptionClient,
    ServiceDescriptor,
    build_descriptor,
    extract_services,
)
from upnp2mqtt._discovery import (
    DiscoveryEvent,
    DiscoveryKind,
    DiscoveryPort,
    SsdpDiscovery,
)
from upnp2mqtt._errors import (
    BridgeError,
    ErrorPayload,
    ErrorPublisher,
    FetchError,
    RenewalError,
    SubscribeError,
    UnsubscribeError,
    build_error_payload,
)
from upnp2mqtt._fetcher import DescriptionFetcher, ProcessedGuard
from upnp2mqtt._gena import (
    GenaClient,
    SubscriptionErrorKind,
    SubscriptionHandle,
    SubscriptionPort,
)
from upnp2mqtt._health import HealthReporter, HeartbeatPayload, build_will_config
from upnp2mqtt._lifecycle import LifecycleController
from upnp2mqtt._logging import JsonFormatter, configure_logging
from upnp2mqtt._mqtt import (
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttPort,
    NullMqttClient,
    WillConfig,
)
from upnp2mqtt._pipeline import Pipeline
from upnp2mqtt._queue import SubscriptionQueue
from upnp2mqtt._registry import DeviceRecord, DeviceRegistry, DeviceState
from upnp2mqtt._relay import EventRelay, normalize
from upnp2mqtt._settings import (
    DiscoverySettings,
    EventingSettings,
    LoggingSettings,
    MqttSettings,
    Settings,
)
from upnp2mqtt._subscriptions import SubscriptionManager
from upnp2mqtt._worker import DiscoveryWorker

try:
    __version__ = version("upnp2mqtt")
except PackageNotFoundError:
    # Source checkout without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Bridge
    "Bridge",
    "BridgeContext",
    "LifecycleController",
    # Pipeline
    "DescriptionFetcher",
    "DiscoveryWorker",
    "EventRelay",
    "Pipeline",
    "ProcessedGuard",
    "SubscriptionManager",
    "SubscriptionQueue",
    "normalize",
    # Registry
    "DeviceRecord",
    "DeviceRegistry",
    "DeviceState",
    # Discovery
    "DiscoveryEvent",
    "DiscoveryKind",
    "DiscoveryPort",
    "SsdpDiscovery",
    # Descriptions
    "DescriptionPort",
    "DeviceDescriptor",
    "HttpDescriptionClient",
    "ServiceDescriptor",
    "build_descriptor",
    "extract_services",
    # Eventing
    "GenaClient",
    "SubscriptionErrorKind",
    "SubscriptionHandle",
    "SubscriptionPort",
    # Clock
    "ClockPort",
    "SystemClock",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttPort",
    "NullMqttClient",
    "WillConfig",
    # Errors
    "BridgeError",
    "ErrorPayload",
    "ErrorPublisher",
    "FetchError",
    "RenewalError",
    "SubscribeError",
    "UnsubscribeError",
    "build_error_payload",
    # Health
    "HealthReporter",
    "HeartbeatPayload",
    "build_will_config",
    # Settings
    "DiscoverySettings",
    "EventingSettings",
    "LoggingSettings",
    "MqttSettings",
    "Settings",
]
