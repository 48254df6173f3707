"""Probe configuration via pydantic-settings.

Configuration is merged from (highest priority first) constructor
arguments, environment variables, a ``.env`` file and an optional
``config/appsettings.json`` file.  Nested models use ``__`` as the
delimiter in env var names, e.g. ``MQTT__HOST=broker.local``.

The probe keeps the configuration keys the edge runtime already
provides, so an existing DirectMethodSender module manifest works
unchanged::

    DMDelay=00:00:05
    TargetModuleId=DirectMethodReceiver
    IOTEDGE_DEVICEID=edge-device-1
    ClientTransportType=Mqtt_WebSocket_Only

Durations accept numbers of seconds (``5``, ``0.5``), ``HH:MM:SS``
strings and ISO 8601 (``PT5S``).
"""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    field_validator,
)
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from dmsender._models import TargetIdentity

PositiveDuration = Annotated[timedelta, Field(gt=timedelta(0))]

# -------------------------------------------------------------------
# Transport choice
# -------------------------------------------------------------------


class Transport(StrEnum):
    """Wire protocol family used to open the connection.

    ``tcp`` is plain MQTT over a TCP socket; ``websockets`` tunnels MQTT
    through a WebSocket for networks that only allow HTTP(S) egress.
    """

    TCP = "tcp"
    WEBSOCKETS = "websockets"


_LEGACY_TRANSPORTS: dict[str, Transport] = {
    "mqtt": Transport.TCP,
    "mqtt_tcp_only": Transport.TCP,
    "mqtt_websocket_only": Transport.WEBSOCKETS,
}


def parse_transport(value: Any) -> Any:
    """Map edge-runtime transport names onto :class:`Transport`.

    Unknown strings pass through unchanged so that pydantic reports
    them as enum validation errors.  AMQP and HTTP names are rejected
    explicitly because this client only speaks MQTT.
    """
    if not isinstance(value, str) or isinstance(value, Transport):
        return value
    key = value.strip().lower()
    if key.startswith(("amqp", "http")):
        msg = f"Transport {value!r} is not supported; use an MQTT transport"
        raise ValueError(msg)
    return _LEGACY_TRANSPORTS.get(key, key)


# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings; nested via composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """Broker connection used for method calls and telemetry.

    Environment variables (with ``__`` nesting)::

        MQTT__HOST=broker.local
        MQTT__PORT=1883
        MQTT__USERNAME=user
        MQTT__PASSWORD=secret
        MQTT__TOPIC_PREFIX=edge
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
            "MQTT client identifier. When empty, '{device_id}/{module_id}' "
            "is used."
        ),
    )
    tls: bool = Field(
        default=False,
        description="Wrap the connection in TLS using the system trust store.",
    )
    websocket_path: str = Field(
        default="/mqtt",
        description="HTTP path of the broker's WebSocket endpoint.",
    )
    connect_timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Seconds to wait for the broker to accept the connection.",
    )
    topic_prefix: str = Field(
        default="edge",
        description="Root prefix shared by every module on the fabric.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    The ``format`` field selects the output format:

    - ``"json"`` (default) — structured JSON lines for container
      log aggregators.
    - ``"text"`` — human-readable timestamped format for local
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


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the direct-method probe.

    The environment and ``.env`` are read only under the keys the edge
    runtime uses (``DMDelay``, ``IOTEDGE_DEVICEID``, ...), matched
    case-insensitively, plus the ``MQTT__*`` and ``LOGGING__*`` groups.
    A stray ``INTERVAL`` or ``DEVICE_ID`` variable is ignored.  Code and
    ``config/appsettings.json`` may also use the Python field names.

    Example ``config/appsettings.json``::

        {
            "DMDelay": "00:00:10",
            "TargetModuleId": "DirectMethodReceiver",
            "mqtt": {"host": "edgehub", "port": 8883, "tls": true}
        }
    """

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        json_file="config/appsettings.json",
        json_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )
    """No ``env_prefix``: the edge runtime injects unprefixed names such
    as ``IOTEDGE_DEVICEID``.  Scalar fields carry those names as their
    only alias, so unrelated variables are ignored rather than rejected.
    """

    interval: PositiveDuration = Field(
        default=timedelta(seconds=5),
        validation_alias="DMDelay",
        description="Pause between successive method calls.",
    )
    device_id: str = Field(
        min_length=1,
        validation_alias="IOTEDGE_DEVICEID",
        description="Identity of the device this probe runs on.",
    )
    module_id: str = Field(
        default="DirectMethodSender",
        min_length=1,
        validation_alias="IOTEDGE_MODULEID",
        description="Identity of this probe module.",
    )
    target_device_id: str | None = Field(
        default=None,
        validation_alias="TargetDeviceId",
        description="Device hosting the target module. Defaults to device_id.",
    )
    target_module_id: str = Field(
        default="DirectMethodReceiver",
        min_length=1,
        validation_alias="TargetModuleId",
        description="Module whose direct method is invoked.",
    )
    transport: Transport = Field(
        default=Transport.TCP,
        validation_alias="ClientTransportType",
        description="Wire protocol family for the connection.",
    )
    response_timeout: PositiveDuration = Field(
        default=timedelta(seconds=30),
        validation_alias="ResponseTimeout",
        description="How long a single method call may wait for its reply.",
    )
    shutdown_grace_period: PositiveDuration = Field(
        default=timedelta(seconds=5),
        validation_alias="ShutdownGracePeriod",
        description="Time allowed for teardown before the process is forced out.",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )

    @field_validator("transport", mode="before")
    @classmethod
    def normalise_transport(cls, value: Any) -> Any:
        return parse_transport(value)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Insert the JSON file below env vars and ``.env``."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @property
    def source(self) -> TargetIdentity:
        """Identity of this probe on the fabric."""
        return TargetIdentity(device_id=self.device_id, module_id=self.module_id)

    @property
    def target(self) -> TargetIdentity:
        """Identity whose direct method the probe calls."""
        return TargetIdentity(
            device_id=self.target_device_id or self.device_id,
            module_id=self.target_module_id,
        )
