"""
Bridge daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded IPs or credentials.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from sunspec_bridge.src.registers import ChannelKind


class ChannelConfig(BaseModel):
    """One channel declaration: a name and its kind (``state``/``AC``/``DC``)."""

    name: str
    type: ChannelKind


def _default_channels() -> list[ChannelConfig]:
    return [
        ChannelConfig(name="Inverter", type=ChannelKind.STATE),
        ChannelConfig(name="Inverter AC", type=ChannelKind.AC),
        ChannelConfig(name="Inverter DC", type=ChannelKind.DC),
    ]


class BridgeSettings(BaseSettings):
    """Bridge daemon configuration.

    Only ``INVERTER_HOST`` is required; everything else has a default.
    ``CHANNELS`` is a JSON list, e.g.
    ``[{"name": "Inverter AC", "type": "AC"}]``.

    Attributes:
        inverter_host: Inverter IP address / hostname on the local LAN.
        inverter_port: Modbus TCP port (default 502).
        inverter_slave_id: Modbus unit ID (default 1).
        poll_interval_ms: Milliseconds between window reads (min 1000).
        read_timeout_s: Timeout for one window read.
        reconnect_delay_s: Delay before reconnecting after a transport close.
        device_name: Device name used as MQTT topic prefix.
        channels: Channel declarations.
        mqtt_server: Broker address (``mqtt://host:port``); empty disables MQTT.
        mqtt_username: Optional broker username.
        mqtt_password: Optional broker password.
        history_path: SQLite file for the history log; empty disables it.
        health_path: JSON health file path; empty disables it.
        sink_queue_size: Max undelivered items buffered per sink.
        log_level: Root log level.
    """

    inverter_host: str
    inverter_port: int = 502
    inverter_slave_id: int = 1
    poll_interval_ms: int = 10_000
    read_timeout_s: float = 5.0
    reconnect_delay_s: float = 5.0
    device_name: str = "SolarEdge"
    channels: list[ChannelConfig] = Field(default_factory=_default_channels)
    mqtt_server: str = ""
    mqtt_username: str = ""
    mqtt_password: str = ""
    history_path: str = "/data/history.db"
    health_path: str = "/data/health.json"
    sink_queue_size: int = 100
    log_level: str = "INFO"

    @field_validator("poll_interval_ms")
    @classmethod
    def poll_interval_must_be_reasonable(cls, v: int) -> int:
        """Minimum 1000 ms to avoid overloading the inverter's Modbus server."""
        if v < 1000:
            raise ValueError("POLL_INTERVAL_MS must be >= 1000")
        return v

    @field_validator("inverter_port")
    @classmethod
    def inverter_port_must_be_valid(cls, v: int) -> int:
        """Validate Modbus TCP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("INVERTER_PORT must be between 1 and 65535")
        return v

    @field_validator("inverter_slave_id")
    @classmethod
    def inverter_slave_id_must_be_valid(cls, v: int) -> int:
        """Validate Modbus slave ID is in valid range (1-247)."""
        if v < 1 or v > 247:
            raise ValueError("INVERTER_SLAVE_ID must be between 1 and 247")
        return v

    @field_validator("read_timeout_s", "reconnect_delay_s")
    @classmethod
    def delays_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("READ_TIMEOUT_S and RECONNECT_DELAY_S must be > 0")
        return v

    @field_validator("sink_queue_size")
    @classmethod
    def sink_queue_size_must_be_valid(cls, v: int) -> int:
        if v < 1:
            raise ValueError("SINK_QUEUE_SIZE must be >= 1")
        return v

    @field_validator("channels")
    @classmethod
    def channel_names_must_be_unique(
        cls, v: list[ChannelConfig]
    ) -> list[ChannelConfig]:
        """Reject duplicate channel names."""
        names = [c.name for c in v]
        if len(names) != len(set(names)):
            raise ValueError("CHANNELS must have unique names")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
