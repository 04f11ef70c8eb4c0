"""
Pure decoder that turns a raw SunSpec register window into scaled readings.

A :class:`RegisterWindow` is an immutable snapshot of one successful
holding-register read.  SunSpec stores most measurements as an unsigned
value register plus a separate scale-factor register; the engineering value
is ``raw * 10 ** exponent``.  The scale factor is a signed 16-bit exponent
delivered as an unsigned word, so a stored ``65535`` means ``-1`` and a
stored ``65534`` means ``-2`` (``exponent = stored - 65536``).

Everything here is a pure function: no side effects, no I/O, no clock.
Decoding the same window from several channels concurrently is safe.

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Document decoding of non-negative scale words

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

_SIGN_BIT = 0x8000
_WORD_RANGE = 0x10000


class DecodeOutOfRangeError(ValueError):
    """A register address lies outside the window being decoded.

    The read window is sized to cover every register the engine consumes,
    so this signals a broken register map rather than a runtime fault.
    """


@dataclass(frozen=True, slots=True)
class RegisterWindow:
    """Immutable snapshot of one contiguous holding-register read.

    Attributes:
        start: Modbus address of the first word.
        values: Raw unsigned 16-bit words in address order.
    """

    start: int
    values: tuple[int, ...]

    @property
    def length(self) -> int:
        """Number of words in the window."""
        return len(self.values)

    def contains(self, address: int) -> bool:
        """Return True if *address* lies inside ``[start, start + length)``."""
        return self.start <= address < self.start + self.length

    def word(self, address: int) -> int:
        """Return the raw unsigned word stored at *address*.

        Raises:
            DecodeOutOfRangeError: If *address* is outside the window.
        """
        if not self.contains(address):
            msg = (
                f"Register {address} outside window "
                f"[{self.start}, {self.start + self.length})"
            )
            raise DecodeOutOfRangeError(msg)
        return self.values[address - self.start] & 0xFFFF


# ---------------------------------------------------------------------------
# Type conversion helpers
# ---------------------------------------------------------------------------


def _convert_s16(raw: int) -> int:
    """Interpret a raw 16-bit value as signed (two's complement)."""
    val = raw & 0xFFFF
    if val >= _SIGN_BIT:
        val -= _WORD_RANGE
    return val


def scale_exponent(raw_scale: int) -> int:
    """Convert a stored SunSpec scale-factor word to its decimal exponent.

    Negative exponents arrive biased into unsigned space, so the exponent is
    ``raw_scale - 65536`` for every stored value with the sign bit set
    (``65535 -> -1``, ``65534 -> -2``).  Words without the sign bit are
    non-negative exponents and are returned unchanged.
    """
    return _convert_s16(raw_scale)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode(window: RegisterWindow, value_address: int, scale_address: int) -> float:
    """Decode one scaled reading from *window*.

    Args:
        window: The register window of the current poll.
        value_address: Address of the raw value register.
        scale_address: Address of its scale-factor register.

    Returns:
        ``raw_value * 10 ** exponent`` as a float.  For a scale word with the
        sign bit set (>= 0x8000) this equals
        ``raw_value * 10 ** (scale_factor - 65536)``.  A word below 0x8000 is
        a non-negative exponent, so ``1234 @ 0`` decodes to ``1234.0`` and
        ``12 @ 2`` to ``1200.0``.

    Raises:
        DecodeOutOfRangeError: If either address is outside the window.
    """
    raw_value = window.word(value_address)
    exponent = scale_exponent(window.word(scale_address))
    # Divide for negative exponents so 2300 @ -1 yields exactly 230.0.
    if exponent < 0:
        return raw_value / 10.0 ** (-exponent)
    return raw_value * 10.0**exponent


def decode_signed16(window: RegisterWindow, address: int, scale: float) -> float:
    """Decode a signed 16-bit register with a fixed multiplicative scale."""
    return _convert_s16(window.word(address)) * scale
