"""
SunSpec inverter register map -- single source of truth.

Defines the fixed holding-register window read from the inverter on every
poll, and the value/scale-factor register pairs each channel kind consumes.
Addresses are zero-based Modbus addresses of the SunSpec inverter model
(101/102/103) as exposed by SolarEdge inverters.

The whole window is read with one ``read_holding_registers`` call.  Every
address below must fall inside it; :func:`validate_register_map` checks this
once at startup.

References:
    - SolarEdge SunSpec Technical Note (inverter model registers)
    - SunSpec Information Model Specification, model 101/103

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sunspec_bridge.src.decoder import DecodeOutOfRangeError

# ---------------------------------------------------------------------------
# Window
# ---------------------------------------------------------------------------

WINDOW_START: int = 40071
"""First holding register read on every poll (I_AC_Current)."""

WINDOW_LENGTH: int = 38
"""Number of 16-bit words read on every poll (40071..40108 inclusive)."""


# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


class ChannelKind(str, Enum):
    """Channel variant, chosen once when a channel is registered.

    ``STATE`` channels report temperature and operating state only; ``AC``
    and ``DC`` channels carry power/voltage/current and an energy
    accumulator.
    """

    STATE = "state"
    AC = "AC"
    DC = "DC"


@dataclass(frozen=True, slots=True)
class ScaledRegister:
    """A value register paired with its SunSpec scale-factor register.

    Attributes:
        value_address: Address of the raw value register.
        scale_address: Address of the scale-factor register.
        unit: Engineering unit string (e.g. ``"W"``).
    """

    value_address: int
    scale_address: int
    unit: str


@dataclass(frozen=True, slots=True)
class EnergyRegisters:
    """Registers consumed by one energy-bearing channel kind."""

    power: ScaledRegister
    voltage: ScaledRegister
    current: ScaledRegister


# ---------------------------------------------------------------------------
# AC side
# ---------------------------------------------------------------------------

AC_REGISTERS = EnergyRegisters(
    power=ScaledRegister(value_address=40083, scale_address=40084, unit="W"),
    voltage=ScaledRegister(value_address=40076, scale_address=40082, unit="V"),
    current=ScaledRegister(value_address=40071, scale_address=40075, unit="A"),
)

# ---------------------------------------------------------------------------
# DC side
# ---------------------------------------------------------------------------

DC_REGISTERS = EnergyRegisters(
    power=ScaledRegister(value_address=40100, scale_address=40101, unit="W"),
    voltage=ScaledRegister(value_address=40098, scale_address=40099, unit="V"),
    current=ScaledRegister(value_address=40096, scale_address=40097, unit="A"),
)

# ---------------------------------------------------------------------------
# Inverter state
# ---------------------------------------------------------------------------

TEMPERATURE_ADDRESS: int = 40103
"""Heat sink temperature, signed 16-bit in hundredths of a degree C."""

TEMPERATURE_SCALE: float = 0.01

OPERATING_STATE_ADDRESS: int = 40107
"""SunSpec operating state (I_Status) enumeration."""

PRODUCING_STATES: frozenset[int] = frozenset({4, 5})
"""Operating states meaning the inverter is on: 4 = MPPT, 5 = throttled."""

OPERATING_STATE_NAMES: dict[int, str] = {
    1: "off",
    2: "sleeping",
    3: "starting",
    4: "mppt",
    5: "throttled",
    6: "shutting_down",
    7: "fault",
    8: "standby",
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

ENERGY_REGISTERS: dict[ChannelKind, EnergyRegisters] = {
    ChannelKind.AC: AC_REGISTERS,
    ChannelKind.DC: DC_REGISTERS,
}
"""Register set per energy-bearing channel kind."""


def all_addresses() -> list[int]:
    """Return every register address the metrics engine reads."""
    addresses = [TEMPERATURE_ADDRESS, OPERATING_STATE_ADDRESS]
    for regs in ENERGY_REGISTERS.values():
        for reg in (regs.power, regs.voltage, regs.current):
            addresses.extend((reg.value_address, reg.scale_address))
    return sorted(set(addresses))


def validate_register_map(
    start: int = WINDOW_START,
    length: int = WINDOW_LENGTH,
) -> None:
    """Check that every consumed register lies inside the read window.

    Args:
        start: First address of the window.
        length: Number of words in the window.

    Raises:
        DecodeOutOfRangeError: If any address falls outside the window.
    """
    outside = [a for a in all_addresses() if not start <= a < start + length]
    if outside:
        msg = (
            f"Registers {outside} fall outside the read window "
            f"[{start}, {start + length})"
        )
        raise DecodeOutOfRangeError(msg)
