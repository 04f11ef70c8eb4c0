"""
Bridge daemon main loop for SunSpec inverter telemetry.

Wires the pipeline together and runs it until SIGTERM/SIGINT:

1. **PollSession** keeps the Modbus TCP connection up and reads the register
   window on every tick.
2. Each window is processed synchronously on the event loop: the
   **MetricsEngine** derives per-channel snapshots and energy events, and the
   **SinkFanout** enqueues them for every sink.
3. Sinks (live cache, SQLite history, MQTT) consume their queues in their own
   tasks, so a slow or offline sink never delays polling.

A processing error for one window is logged and does not stop the loop.
Graceful shutdown on SIGTERM/SIGINT sets a shared asyncio.Event; the poll
session is stopped first so no further snapshots are produced, then the sink
queues are drained and closed.

Structured JSON logging is used for all events.  A HealthWriter tracks the
last successful poll, the connection state and the read error count.

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Write read errors to health file on every failed read
- 2026-10-19: Connect MQTT inside the exit stack; return the live cache

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sunspec_bridge.src.cache import LiveValueCache
from sunspec_bridge.src.fanout import SinkFanout
from sunspec_bridge.src.health import HealthWriter
from sunspec_bridge.src.history import HistoryRecorder
from sunspec_bridge.src.metrics import MetricsEngine
from sunspec_bridge.src.mqtt_publisher import MqttPublisher
from sunspec_bridge.src.poller import ConnectionState, PollSession

if TYPE_CHECKING:
    from sunspec_bridge.src.config import BridgeSettings
    from sunspec_bridge.src.decoder import RegisterWindow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the bridge daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def _masked(value: str | None) -> str:
    return "set" if value else "empty"


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup, excluding secrets.

    Args:
        settings: A BridgeSettings instance (or any object with the same attrs).
    """
    channels = [
        f"{c.name}:{c.type.value}"
        for c in settings.channels  # type: ignore[attr-defined]
    ]
    logger.info(
        "Bridge daemon starting with config: "
        "inverter_host=%s, inverter_port=%s, inverter_slave_id=%s, "
        "poll_interval_ms=%s, read_timeout_s=%s, reconnect_delay_s=%s, "
        "device_name=%s, channels=%s, mqtt_server=%s, mqtt_username=%s, "
        "mqtt_password=%s, history_path=%s, health_path=%s",
        settings.inverter_host,  # type: ignore[attr-defined]
        settings.inverter_port,  # type: ignore[attr-defined]
        settings.inverter_slave_id,  # type: ignore[attr-defined]
        settings.poll_interval_ms,  # type: ignore[attr-defined]
        settings.read_timeout_s,  # type: ignore[attr-defined]
        settings.reconnect_delay_s,  # type: ignore[attr-defined]
        settings.device_name,  # type: ignore[attr-defined]
        channels,
        settings.mqtt_server or "disabled",  # type: ignore[attr-defined]
        settings.mqtt_username,  # type: ignore[attr-defined]
        _masked(settings.mqtt_password),  # type: ignore[attr-defined]
        settings.history_path or "disabled",  # type: ignore[attr-defined]
        settings.health_path or "disabled",  # type: ignore[attr-defined]
    )


# ---------------------------------------------------------------------------
# Per-window and per-state handlers (easily testable)
# ---------------------------------------------------------------------------


def _process_window(
    window: RegisterWindow,
    *,
    engine: MetricsEngine,
    fanout: SinkFanout,
    health: HealthWriter | None,
) -> None:
    """Derive metrics from one window and hand them to every sink.

    Runs synchronously on the event loop so the whole wave of snapshots for
    one tick is enqueued before the next tick can dispatch.
    """
    items = engine.process(window)
    fanout.publish_all(items)
    logger.debug("Processed window: %d items published", len(items))

    if health is not None:
        try:
            health.record_poll()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)


def _record_state(
    state: ConnectionState,
    *,
    session: PollSession,
    health: HealthWriter | None,
) -> None:
    if health is None:
        return
    try:
        health.set_read_errors(session.read_errors)
        health.set_connection_state(state.value)
    except Exception:
        logger.warning("Failed to write health file", exc_info=True)


def _record_read_errors(count: int, *, health: HealthWriter | None) -> None:
    if health is None:
        return
    try:
        health.set_read_errors(count)
    except Exception:
        logger.warning("Failed to write health file", exc_info=True)


# ---------------------------------------------------------------------------
# Pipeline runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_bridge(
    *,
    settings: BridgeSettings,
    shutdown_event: asyncio.Event,
    cache: LiveValueCache | None = None,
) -> LiveValueCache:
    """Build every component from *settings* and run until shutdown.

    Args:
        settings: Loaded bridge settings.
        shutdown_event: Event to signal graceful shutdown.
        cache: Live-value cache to feed; a new one is created when omitted.

    Returns:
        The live-value cache that was fed, holding the last values seen.
    """
    channels = [(c.name, c.type) for c in settings.channels]
    engine = MetricsEngine(
        device=settings.device_name,
        poll_interval_ms=settings.poll_interval_ms,
        channels=channels,
    )
    engine.bind_loop(asyncio.get_running_loop())

    fanout = SinkFanout(queue_size=settings.sink_queue_size)
    live = cache if cache is not None else LiveValueCache()
    fanout.add_sink("cache", live)

    health = HealthWriter(settings.health_path) if settings.health_path else None

    async with contextlib.AsyncExitStack() as stack:
        if settings.history_path:
            history = await stack.enter_async_context(
                HistoryRecorder(settings.history_path)
            )
            fanout.add_sink("history", history)

        if settings.mqtt_server:
            publisher = MqttPublisher(
                settings.mqtt_server,
                settings.device_name,
                username=settings.mqtt_username or None,
                password=settings.mqtt_password or None,
            )
            publisher.enable_reset_commands(channels, engine.request_reset)
            fanout.add_sink("mqtt", publisher)
            publisher.connect()
            stack.callback(publisher.disconnect)

        session: PollSession

        def on_window(window: RegisterWindow) -> None:
            _process_window(window, engine=engine, fanout=fanout, health=health)

        def on_state_change(state: ConnectionState) -> None:
            _record_state(state, session=session, health=health)

        def on_read_error(count: int) -> None:
            _record_read_errors(count, health=health)

        session = PollSession(
            host=settings.inverter_host,
            port=settings.inverter_port,
            slave_id=settings.inverter_slave_id,
            poll_interval_ms=settings.poll_interval_ms,
            on_window=on_window,
            on_state_change=on_state_change,
            on_read_error=on_read_error,
            read_timeout_s=settings.read_timeout_s,
            reconnect_delay_s=settings.reconnect_delay_s,
        )

        fanout.start()
        session.start()
        logger.info(
            "Bridge running with channels %s and sinks %s",
            engine.channel_names,
            fanout.sink_names,
        )
        try:
            await shutdown_event.wait()
        finally:
            await session.stop()
            await fanout.aclose()

    logger.info("Shutdown complete")
    return live


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run until signalled.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from sunspec_bridge.src.config import BridgeSettings

    settings = BridgeSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    await run_bridge(settings=settings, shutdown_event=shutdown_event)


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the bridge daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
