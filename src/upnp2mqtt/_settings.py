"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files.  All variables carry the ``UPNP2MQTT_`` prefix and nested models
use ``__`` as the delimiter, e.g. ``UPNP2MQTT_MQTT__HOST=broker.local``.

The schema covers four concerns:

* **MQTT**: broker connection and topic layout.
* **Logging**: level, format, optional file sink, rotation.
* **Discovery**: SSDP search cadence and the queue retry schedule.
* **Eventing**: GENA callback server and subscription leases.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings: nested via composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection and topic configuration.

    Environment variables (with ``__`` nesting)::

        UPNP2MQTT_MQTT__HOST=broker.local
        UPNP2MQTT_MQTT__PORT=1883
        UPNP2MQTT_MQTT__USERNAME=user
        UPNP2MQTT_MQTT__PASSWORD=secret
        UPNP2MQTT_MQTT__TOPIC_PREFIX=upnp
    """

    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, the bridge generates "
            "'upnp2mqtt-{hex8}' at startup."
        ),
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS level for published events.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Initial seconds to wait before reconnecting after "
            "connection loss.  Doubles on each consecutive failure "
            "up to ``reconnect_max_interval``."
        ),
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Upper bound (seconds) for the reconnect backoff.",
    )
    topic_prefix: str = Field(
        default="upnp",
        description="Root prefix for all MQTT topics.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    The ``format`` field selects the output format:

    - ``"json"`` (default): structured JSON lines for container
      log aggregators.
    - ``"text"``: human-readable timestamped format for local
      development and direct terminal use.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format, 'json' or 'text'.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


class DiscoverySettings(BaseModel):
    """SSDP discovery and discovery-queue configuration.

    The retry schedule is per device: the first failed attempt is
    parked for ``retry_initial_delay`` seconds, every further
    consecutive failure doubles the delay up to ``retry_max_delay``.
    """

    search_target: str = Field(
        default="ssdp:all",
        description="ST header sent with M-SEARCH requests.",
    )
    search_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Seconds between periodic M-SEARCH broadcasts.",
    )
    mx: Annotated[int, Field(ge=1, le=5)] = Field(
        default=2,
        description="MX header (maximum response delay) for M-SEARCH.",
    )
    poll_interval: Annotated[float, Field(gt=0)] = Field(
        default=1.0,
        description="Idle wait of the discovery queue worker when empty.",
    )
    retry_initial_delay: Annotated[float, Field(gt=0)] = Field(
        default=1.0,
        description="Backoff before the first retry of a failed device.",
    )
    retry_max_delay: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Upper bound for the per-device retry backoff.",
    )


class EventingSettings(BaseModel):
    """GENA eventing configuration.

    Devices deliver NOTIFY requests to an HTTP callback server run by
    the bridge.  ``callback_host`` must be reachable from the devices;
    when empty the address of the interface routing to the device is
    used.
    """

    callback_host: str = Field(
        default="",
        description="Address advertised in CALLBACK headers.",
    )
    callback_port: Annotated[int, Field(ge=0, le=65535)] = Field(
        default=0,
        description="Port of the NOTIFY callback server (0 = ephemeral).",
    )
    lease_seconds: Annotated[int, Field(ge=60)] = Field(
        default=1800,
        description="Requested subscription lease (TIMEOUT header).",
    )
    request_timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Timeout for description fetches and GENA requests.",
    )
    shutdown_grace: Annotated[float, Field(ge=0)] = Field(
        default=2.0,
        description=(
            "Seconds to let fire-and-forget UNSUBSCRIBE requests reach "
            "the network before the process exits."
        ),
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the upnp2mqtt bridge.

    Example ``.env``::

        UPNP2MQTT_MQTT__HOST=openwrt
        UPNP2MQTT_LOGGING__LEVEL=DEBUG
        UPNP2MQTT_LOGGING__FORMAT=text
        UPNP2MQTT_EVENTING__CALLBACK_PORT=8058
    """

    model_config = SettingsConfigDict(
        env_prefix="UPNP2MQTT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
    discovery: DiscoverySettings = Field(
        default_factory=DiscoverySettings,
        description="SSDP discovery and retry schedule.",
    )
    eventing: EventingSettings = Field(
        default_factory=EventingSettings,
        description="GENA subscription settings.",
    )
