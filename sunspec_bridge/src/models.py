"""
Pydantic models for derived inverter metrics.

Defines the per-channel MetricsSnapshot emitted on every poll tick and the
EnergyEvent emitted when an hour or day boundary is crossed.  Both are plain
value objects handed to every sink; nothing downstream mutates them.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from sunspec_bridge.src.registers import ChannelKind

PROTOCOL_EPOCH = datetime(2001, 1, 1, tzinfo=UTC)
"""Reference instant for the exposed energy reset timestamp."""


def seconds_since_protocol_epoch(ts: datetime) -> int:
    """Return whole seconds between *ts* and 2001-01-01T00:00:00Z.

    Naive datetimes are interpreted as local time, like ``datetime.timestamp``.
    """
    return round(ts.timestamp() - PROTOCOL_EPOCH.timestamp())


class EnergyPeriod(str, Enum):
    """Boundary that produced an :class:`EnergyEvent`."""

    HOURLY = "hourly"
    DAILY = "daily"


class MetricsSnapshot(BaseModel):
    """Point-in-time metrics for one channel, produced once per poll tick.

    Energy channels (AC/DC) fill the power, voltage, current and energy
    fields; the state channel fills ``temperature_c`` only.  ``is_on`` is
    set for every channel kind.

    Attributes:
        device: Device name used as topic prefix (e.g. ``"SolarEdge"``).
        channel: Configured channel name.
        kind: Channel variant.
        ts: Wall-clock time of the tick.
        is_on: True when the inverter reports a producing operating state.
        operating_state: Raw SunSpec operating state code.
        power_w: Instantaneous power in watts.
        voltage_v: Instantaneous voltage in volts.
        current_a: Instantaneous current in amperes.
        energy_kwh: Energy accumulated since the last reset.
        reset_ts: Time of the last accumulator reset.
        reset_reference_s: ``reset_ts`` as seconds since 2001-01-01T00:00:00Z.
        temperature_c: Inverter temperature in degrees Celsius.
    """

    model_config = ConfigDict(frozen=True)

    device: str
    channel: str
    kind: ChannelKind
    ts: datetime
    is_on: bool
    operating_state: int
    power_w: float | None = None
    voltage_v: float | None = None
    current_a: float | None = None
    energy_kwh: float | None = None
    reset_ts: datetime | None = None
    reset_reference_s: int | None = None
    temperature_c: float | None = None


class EnergyEvent(BaseModel):
    """Accumulated energy reported at an hour or day boundary.

    For ``DAILY`` events ``energy_kwh`` is the total accumulated before the
    midnight reset; for ``HOURLY`` events it is the running (non-reset) total.
    """

    model_config = ConfigDict(frozen=True)

    device: str
    channel: str
    kind: ChannelKind
    period: EnergyPeriod
    ts: datetime
    energy_kwh: float
