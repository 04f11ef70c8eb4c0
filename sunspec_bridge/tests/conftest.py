"""
Shared test fixtures for bridge daemon tests.

Provides environment variable fixtures for BridgeSettings configuration tests
and helpers to build realistic register windows.  All bridge env vars are
cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import pytest
from sunspec_bridge.src.decoder import RegisterWindow
from sunspec_bridge.src.registers import WINDOW_LENGTH, WINDOW_START

# All BridgeSettings environment variable names, used for cleanup.
_ALL_BRIDGE_ENV_VARS = (
    "INVERTER_HOST",
    "INVERTER_PORT",
    "INVERTER_SLAVE_ID",
    "POLL_INTERVAL_MS",
    "READ_TIMEOUT_S",
    "RECONNECT_DELAY_S",
    "DEVICE_NAME",
    "CHANNELS",
    "MQTT_SERVER",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "HISTORY_PATH",
    "HEALTH_PATH",
    "SINK_QUEUE_SIZE",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_bridge_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all bridge env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_BRIDGE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all environment variables for BridgeSettings."""
    env = {
        "INVERTER_HOST": "192.168.1.50",
        "INVERTER_PORT": "1502",
        "INVERTER_SLAVE_ID": "2",
        "POLL_INTERVAL_MS": "5000",
        "READ_TIMEOUT_S": "3",
        "RECONNECT_DELAY_S": "5",
        "DEVICE_NAME": "Roof",
        "CHANNELS": '[{"name": "Temp", "type": "state"}, {"name": "AC", "type": "AC"}]',
        "MQTT_SERVER": "mqtt://broker.local:1884",
        "MQTT_USERNAME": "solar",
        "MQTT_PASSWORD": "secret-pw",
        "HISTORY_PATH": "/tmp/test-history.db",
        "HEALTH_PATH": "/tmp/test-health.json",
        "SINK_QUEUE_SIZE": "50",
        "LOG_LEVEL": "DEBUG",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables."""
    env = {"INVERTER_HOST": "10.0.0.20"}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


def make_window(**registers: int) -> RegisterWindow:
    """Build a full-size window with the given ``rNNNNN=value`` overrides.

    Unset words are zero.  Example: ``make_window(r40083=2300, r40084=65535)``.
    """
    values = [0] * WINDOW_LENGTH
    for key, value in registers.items():
        address = int(key.lstrip("r"))
        values[address - WINDOW_START] = value
    return RegisterWindow(start=WINDOW_START, values=tuple(values))


def inverter_window(
    *,
    ac_power: int = 2300,
    ac_power_sf: int = 65535,
    dc_power: int = 24000,
    dc_power_sf: int = 65535,
    state: int = 4,
    temperature: int = 4150,
) -> RegisterWindow:
    """A plausible window for a producing single-phase inverter.

    Defaults: AC 230.0 W, 230.0 V, 1.0 A; DC 2400.0 W, 380.0 V, 6.3 A;
    41.5 degrees C; operating state 4 (MPPT).
    """
    return make_window(
        r40071=100,  # AC current
        r40075=65534,  # AC current SF (-2)
        r40076=2300,  # AC voltage
        r40082=65535,  # AC voltage SF (-1)
        r40083=ac_power,
        r40084=ac_power_sf,
        r40096=63,  # DC current
        r40097=65535,  # DC current SF (-1)
        r40098=3800,  # DC voltage
        r40099=65535,  # DC voltage SF (-1)
        r40100=dc_power,
        r40101=dc_power_sf,
        r40103=temperature,
        r40107=state,
    )
