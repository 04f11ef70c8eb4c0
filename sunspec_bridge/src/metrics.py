"""
Derived-metrics engine: per-channel energy accumulation and boundary resets.

Consumes one :class:`~sunspec_bridge.src.decoder.RegisterWindow` per poll
tick and produces, for every registered channel, one
:class:`~sunspec_bridge.src.models.MetricsSnapshot` plus any
:class:`~sunspec_bridge.src.models.EnergyEvent` triggered by the tick.

Energy channels (AC/DC) integrate instantaneous power over the poll interval
into an :class:`EnergyAccumulator`.  On the first tick inside an hour
boundary the running total is reported as an hourly event; on the first tick
inside the midnight boundary the total is reported as a daily event and the
accumulator is zeroed.  Boundaries are checked before the tick's energy is
added, and the daily reset runs before the hourly event, so the midnight
hourly event reports 0 and the new day starts with that tick's energy.  A
boundary window is one poll interval wide, and each boundary fires at most
once per hour/day.

Accumulators are only mutated from the event loop: :meth:`MetricsEngine.process`
runs there, and :meth:`MetricsEngine.request_reset` marshals resets coming
from other threads (e.g. the MQTT network thread) onto it.

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Check boundaries before accumulating the tick's energy

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime

from sunspec_bridge.src.decoder import RegisterWindow, decode, decode_signed16
from sunspec_bridge.src.models import (
    EnergyEvent,
    EnergyPeriod,
    MetricsSnapshot,
    seconds_since_protocol_epoch,
)
from sunspec_bridge.src.registers import (
    ENERGY_REGISTERS,
    OPERATING_STATE_ADDRESS,
    OPERATING_STATE_NAMES,
    PRODUCING_STATES,
    TEMPERATURE_ADDRESS,
    TEMPERATURE_SCALE,
    WINDOW_LENGTH,
    WINDOW_START,
    ChannelKind,
    EnergyRegisters,
    validate_register_map,
)

logger = logging.getLogger(__name__)

MetricsItem = MetricsSnapshot | EnergyEvent


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def energy_increment_kwh(power_w: float, interval_ms: float) -> float:
    """Energy produced at *power_w* over one poll interval, in kWh.

    ``power / (ticks per hour) / 1000``, i.e. power times the interval
    expressed as a fraction of an hour, converted from Wh to kWh.
    """
    return power_w / (3600 * 1000 / interval_ms) / 1000


def is_producing(operating_state: int) -> bool:
    """Return True if *operating_state* is one of the producing codes."""
    return operating_state in PRODUCING_STATES


# ---------------------------------------------------------------------------
# Per-channel state
# ---------------------------------------------------------------------------


class EnergyAccumulator:
    """Running kWh total for one channel and the time it was last zeroed.

    Starts at zero on process start; nothing is persisted across restarts.
    """

    def __init__(self, now: datetime) -> None:
        self.kwh: float = 0.0
        self.reset_at: datetime = now

    def add(self, kwh: float) -> None:
        self.kwh += kwh

    def reset(self, now: datetime) -> float:
        """Zero the total, record *now* as reset time, return the old total."""
        previous = self.kwh
        self.kwh = 0.0
        self.reset_at = now
        return previous

    @property
    def reset_reference(self) -> int:
        """Seconds between the last reset and 2001-01-01T00:00:00Z."""
        return seconds_since_protocol_epoch(self.reset_at)


@dataclass(slots=True)
class _Channel:
    name: str
    kind: ChannelKind
    registers: EnergyRegisters | None = None
    accumulator: EnergyAccumulator | None = None
    last_hourly: datetime | None = field(default=None)
    last_daily: date | None = field(default=None)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MetricsEngine:
    """Turns register windows into per-channel snapshots and energy events.

    Args:
        device: Device name stamped on every snapshot (topic prefix).
        poll_interval_ms: Poll cadence; sets both the energy integration
            step and the width of the hour/day boundary window.
        channels: Optional ``(name, kind)`` pairs registered up front.
        clock: Returns the current wall-clock time.  Local time is used for
            hour/day boundaries.
        window_start: First address of the register window.
        window_length: Length of the register window.

    Raises:
        DecodeOutOfRangeError: If the register map does not fit the window.
    """

    def __init__(
        self,
        *,
        device: str,
        poll_interval_ms: int,
        channels: Iterable[tuple[str, ChannelKind]] = (),
        clock: Callable[[], datetime] = datetime.now,
        window_start: int = WINDOW_START,
        window_length: int = WINDOW_LENGTH,
    ) -> None:
        validate_register_map(window_start, window_length)
        if poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be > 0")
        self._device = device
        self._poll_interval_ms = poll_interval_ms
        self._clock = clock
        self._channels: dict[str, _Channel] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._last_operating_state: int | None = None
        for name, kind in channels:
            self.register_channel(name, kind)

    @property
    def channel_names(self) -> list[str]:
        return list(self._channels)

    def register_channel(self, name: str, kind: ChannelKind | str) -> None:
        """Register a channel; its variant is fixed from here on.

        Raises:
            ValueError: If *name* is already registered or *kind* is unknown.
        """
        if name in self._channels:
            raise ValueError(f"Channel '{name}' already registered")
        kind = ChannelKind(kind)
        channel = _Channel(name=name, kind=kind)
        registers = ENERGY_REGISTERS.get(kind)
        if registers is not None:
            channel.registers = registers
            channel.accumulator = EnergyAccumulator(self._clock())
        self._channels[name] = channel
        logger.info("Registered channel '%s' (%s)", name, kind.value)

    def accumulator(self, name: str) -> EnergyAccumulator | None:
        """Return the accumulator of channel *name* (None for state channels)."""
        return self._channels[name].accumulator

    # ------------------------------------------------------------------
    # Tick processing
    # ------------------------------------------------------------------

    def process(
        self,
        window: RegisterWindow,
        now: datetime | None = None,
    ) -> list[MetricsItem]:
        """Process one register window for every registered channel.

        Args:
            window: Register window of the current poll.
            now: Tick time; defaults to the engine clock.

        Returns:
            Events and snapshots in production order: for each channel, its
            boundary events (daily before hourly) followed by its snapshot.
        """
        if now is None:
            now = self._clock()
        operating_state = window.word(OPERATING_STATE_ADDRESS)
        is_on = is_producing(operating_state)
        if operating_state != self._last_operating_state:
            self._last_operating_state = operating_state
            logger.info(
                "Inverter operating state %d (%s)",
                operating_state,
                OPERATING_STATE_NAMES.get(operating_state, "unknown"),
            )

        items: list[MetricsItem] = []
        for channel in self._channels.values():
            if channel.registers is None:
                items.append(
                    self._state_snapshot(channel, window, now, operating_state, is_on)
                )
            else:
                items.extend(
                    self._energy_items(channel, window, now, operating_state, is_on)
                )
        return items

    def _state_snapshot(
        self,
        channel: _Channel,
        window: RegisterWindow,
        now: datetime,
        operating_state: int,
        is_on: bool,
    ) -> MetricsSnapshot:
        temperature = decode_signed16(window, TEMPERATURE_ADDRESS, TEMPERATURE_SCALE)
        return MetricsSnapshot(
            device=self._device,
            channel=channel.name,
            kind=channel.kind,
            ts=now,
            is_on=is_on,
            operating_state=operating_state,
            temperature_c=temperature,
        )

    def _energy_items(
        self,
        channel: _Channel,
        window: RegisterWindow,
        now: datetime,
        operating_state: int,
        is_on: bool,
    ) -> list[MetricsItem]:
        regs = channel.registers
        acc = channel.accumulator
        assert regs is not None and acc is not None

        power = decode(window, regs.power.value_address, regs.power.scale_address)
        voltage = decode(window, regs.voltage.value_address, regs.voltage.scale_address)
        current = decode(window, regs.current.value_address, regs.current.scale_address)

        items: list[MetricsItem] = self._boundary_events(channel, now)
        acc.add(energy_increment_kwh(power, self._poll_interval_ms))
        items.append(
            MetricsSnapshot(
                device=self._device,
                channel=channel.name,
                kind=channel.kind,
                ts=now,
                is_on=is_on,
                operating_state=operating_state,
                power_w=power,
                voltage_v=voltage,
                current_a=current,
                energy_kwh=acc.kwh,
                reset_ts=acc.reset_at,
                reset_reference_s=acc.reset_reference,
            )
        )
        return items

    def _boundary_events(self, channel: _Channel, now: datetime) -> list[MetricsItem]:
        """Emit hourly/daily events if *now* is inside a boundary window."""
        acc = channel.accumulator
        assert acc is not None
        window_s = self._poll_interval_ms / 1000
        if not (now.minute == 0 and now.second < window_s):
            return []

        events: list[MetricsItem] = []
        if now.hour == 0 and channel.last_daily != now.date():
            channel.last_daily = now.date()
            total = acc.reset(now)
            logger.info(
                "Daily reset of channel '%s': %.3f kWh", channel.name, total
            )
            events.append(self._event(channel, EnergyPeriod.DAILY, now, total))

        hour_key = now.replace(minute=0, second=0, microsecond=0)
        if channel.last_hourly != hour_key:
            channel.last_hourly = hour_key
            events.append(self._event(channel, EnergyPeriod.HOURLY, now, acc.kwh))
        return events

    def _event(
        self,
        channel: _Channel,
        period: EnergyPeriod,
        now: datetime,
        kwh: float,
    ) -> EnergyEvent:
        return EnergyEvent(
            device=self._device,
            channel=channel.name,
            kind=channel.kind,
            period=period,
            ts=now,
            energy_kwh=kwh,
        )

    # ------------------------------------------------------------------
    # Manual reset
    # ------------------------------------------------------------------

    def reset(self, name: str, now: datetime | None = None) -> float:
        """Zero channel *name*'s accumulator; must run on the event loop.

        Returns:
            The total accumulated before the reset.

        Raises:
            KeyError: If *name* is not registered.
            ValueError: If the channel has no accumulator.
        """
        acc = self._channels[name].accumulator
        if acc is None:
            raise ValueError(f"Channel '{name}' has no energy accumulator")
        previous = acc.reset(now if now is not None else self._clock())
        logger.info("Manual reset of channel '%s' (was %.3f kWh)", name, previous)
        return previous

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Set the event loop that :meth:`request_reset` marshals onto."""
        self._loop = loop

    def request_reset(self, name: str) -> None:
        """Request a reset from any thread.

        The reset itself runs on the bound event loop so it never races a
        poll tick.  Without a bound loop the reset runs immediately.
        """
        if self._loop is None:
            self._safe_reset(name)
            return
        self._loop.call_soon_threadsafe(self._safe_reset, name)

    def _safe_reset(self, name: str) -> None:
        try:
            self.reset(name)
        except (KeyError, ValueError):
            logger.warning(
                "Ignoring reset for unknown or non-energy channel '%s'", name
            )
