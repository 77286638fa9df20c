"""Public test-support utilities for upnp2mqtt.

Re-exports test doubles and factories so that test suites can import
everything from a single ``upnp2mqtt.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`BridgeHarness`: whole bridge wired to in-memory doubles.
- :class:`MockMqttClient`: in-memory MQTT double that records calls.
- :class:`MockDiscovery`: discovery source fed by ``emit()``.
- :class:`MockDescriptionClient`: description documents by URL.
- :class:`MockSubscriptionClient`: GENA double with failure injection.
- :class:`FakeClock`: deterministic clock for timing tests.
- :func:`make_settings`: factory for ``Settings`` without ``.env`` files.
- :func:`make_description`: builds decoded description trees.
"""

from upnp2mqtt._description import MockDescriptionClient
from upnp2mqtt._discovery import MockDiscovery
from upnp2mqtt._gena import MockSubscriptionClient
from upnp2mqtt._mqtt import MockMqttClient, NullMqttClient
from upnp2mqtt.testing._clock import FakeClock
from upnp2mqtt.testing._devices import make_description
from upnp2mqtt.testing._harness import BridgeHarness
from upnp2mqtt.testing._settings import make_settings

__all__ = [
    "BridgeHarness",
    "FakeClock",
    "MockDescriptionClient",
    "MockDiscovery",
    "MockMqttClient",
    "MockSubscriptionClient",
    "NullMqttClient",
    "make_description",
    "make_settings",
]
