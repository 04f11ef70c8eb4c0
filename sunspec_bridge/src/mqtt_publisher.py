"""
MQTT publisher sink for inverter metrics.

Publishes one message per metric per snapshot, using the topic convention
``<device>/<Channel><Metric>`` with the value as a decimal string, e.g.
``SolarEdge/ACPower = "2300.0"`` or ``SolarEdge/Temperature = "41.5"``
(state channels use an empty channel prefix).  Hour and day boundary events
go to ``<device>/<Channel>PowerHourly`` and ``<device>/<Channel>PowerDaily``.

The paho network loop runs in its own thread and reconnects by itself.
While the broker is unreachable every receive() raises SinkError, which the
fan-out logs without affecting other sinks.

Reset commands: a message on ``<device>/<Channel>ResetEnergy`` with a
truthy payload asks the metrics engine to zero that channel's accumulator.
The callback runs on paho's thread, so it must be thread-safe (the engine's
``request_reset`` marshals onto the event loop).

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from sunspec_bridge.src.fanout import SinkError
from sunspec_bridge.src.models import EnergyEvent, EnergyPeriod, MetricsSnapshot
from sunspec_bridge.src.registers import ChannelKind

logger = logging.getLogger(__name__)

DEFAULT_MQTT_PORT = 1883
RECONNECT_MIN_DELAY_S = 1
RECONNECT_MAX_DELAY_S = 60

_TRUTHY_PAYLOADS = {"1", "true", "on", "reset"}

# (snapshot attribute, topic metric suffix)
_ENERGY_METRICS = (
    ("power_w", "Power"),
    ("voltage_v", "Voltage"),
    ("current_a", "Current"),
    ("energy_kwh", "Energy"),
)
_STATE_METRICS = (("temperature_c", "Temperature"),)

_EVENT_SUFFIX = {
    EnergyPeriod.HOURLY: "PowerHourly",
    EnergyPeriod.DAILY: "PowerDaily",
}


def channel_label(kind: ChannelKind) -> str:
    """Topic prefix for a channel kind: ``"AC"``, ``"DC"`` or ``""``."""
    return "" if kind is ChannelKind.STATE else kind.value


def parse_server(server: str) -> tuple[str, int]:
    """Split ``mqtt://host:port`` (or bare ``host[:port]``) into host and port."""
    if "://" not in server:
        server = f"mqtt://{server}"
    parsed = urlparse(server)
    if not parsed.hostname:
        raise ValueError(f"Invalid MQTT server '{server}'")
    return parsed.hostname, parsed.port or DEFAULT_MQTT_PORT


class MqttPublisher:
    """paho-mqtt backed pub/sub sink.

    Args:
        server: Broker address, ``mqtt://host:port`` or ``host[:port]``.
        device: Topic prefix (device name).
        username: Optional broker username.
        password: Optional broker password.
        qos: QoS level for metric messages.
        retain: Whether metric messages are retained.
    """

    def __init__(
        self,
        server: str,
        device: str,
        *,
        username: str | None = None,
        password: str | None = None,
        qos: int = 0,
        retain: bool = False,
    ) -> None:
        self.host, self.port = parse_server(server)
        self.device = device
        self.qos = qos
        self.retain = retain
        self.messages_published = 0
        self._connected = False
        self._reset_topics: dict[str, list[str]] = {}
        self._on_reset: Callable[[str], None] | None = None

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        if username:
            self.client.username_pw_set(username, password)
        self.client.will_set(self.status_topic, payload="offline", qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.reconnect_delay_set(
            min_delay=RECONNECT_MIN_DELAY_S, max_delay=RECONNECT_MAX_DELAY_S
        )

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def status_topic(self) -> str:
        return f"{self.device}/status"

    def topic(self, kind: ChannelKind, metric: str) -> str:
        """Build ``<device>/<Channel><Metric>``."""
        return f"{self.device}/{channel_label(kind)}{metric}"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Start connecting in the background; paho keeps reconnecting."""
        self.client.connect_async(self.host, self.port, keepalive=60)
        self.client.loop_start()
        logger.info("MQTT connecting to %s:%d", self.host, self.port)

    def disconnect(self) -> None:
        if self._connected:
            self.client.publish(self.status_topic, "offline", qos=1, retain=True)
        self.client.loop_stop()
        self.client.disconnect()
        self._connected = False
        logger.info("MQTT disconnected")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            self._connected = True
            logger.info("MQTT connected to %s:%d", self.host, self.port)
            client.publish(self.status_topic, "online", qos=1, retain=True)
            for topic in self._reset_topics:
                client.subscribe(topic, qos=1)
        else:
            self._connected = False
            logger.error("MQTT connection failed: %s", reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected = False
        if reason_code != 0:
            logger.warning("MQTT disconnected unexpectedly: %s", reason_code)

    # ------------------------------------------------------------------
    # Reset commands
    # ------------------------------------------------------------------

    def enable_reset_commands(
        self,
        channels: list[tuple[str, ChannelKind]],
        on_reset: Callable[[str], None],
    ) -> None:
        """Route ``<device>/<Channel>ResetEnergy`` messages to *on_reset*.

        Args:
            channels: ``(name, kind)`` of every energy channel.
            on_reset: Called with the channel name, from paho's thread.
        """
        self._on_reset = on_reset
        for name, kind in channels:
            if kind is ChannelKind.STATE:
                continue
            topic = self.topic(kind, "ResetEnergy")
            self._reset_topics.setdefault(topic, []).append(name)
        if self._connected:
            for topic in self._reset_topics:
                self.client.subscribe(topic, qos=1)

    def _on_message(self, client, userdata, message):
        names = self._reset_topics.get(message.topic)
        if not names or self._on_reset is None:
            return
        payload = message.payload.decode("utf-8", errors="replace").strip().lower()
        if payload not in _TRUTHY_PAYLOADS:
            logger.debug("Ignoring reset payload %r on %s", payload, message.topic)
            return
        for name in names:
            logger.info("Reset command received for channel '%s'", name)
            self._on_reset(name)

    # ------------------------------------------------------------------
    # Sink interface
    # ------------------------------------------------------------------

    async def receive(self, item: MetricsSnapshot | EnergyEvent) -> None:
        """Publish every metric of *item*.

        Raises:
            SinkError: If the broker is not connected or a publish fails.
        """
        if not self._connected:
            raise SinkError(f"MQTT broker {self.host}:{self.port} not connected")

        if isinstance(item, EnergyEvent):
            topic = self.topic(item.kind, _EVENT_SUFFIX[item.period])
            self._publish(topic, item.energy_kwh)
            return

        metrics = _STATE_METRICS if item.kind is ChannelKind.STATE else _ENERGY_METRICS
        for attr, suffix in metrics:
            value = getattr(item, attr)
            if value is not None:
                self._publish(self.topic(item.kind, suffix), value)

    def _publish(self, topic: str, value: float) -> None:
        result = self.client.publish(
            topic, str(value), qos=self.qos, retain=self.retain
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            if result.rc in (mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_CONN_LOST):
                self._connected = False
            raise SinkError(f"MQTT publish to {topic} failed: rc={result.rc}")
        self.messages_published += 1
