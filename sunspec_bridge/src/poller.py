"""
Persistent Modbus TCP poll session for a SunSpec inverter.

Keeps one AsyncModbusTcpClient connected to the inverter and reads the fixed
holding-register window on a repeating tick.  Designed to be robust:

- A failed or timed-out read is logged and skipped; the connection stays up.
- A closed transport (or a refused connection) moves the session to
  ``BACKING_OFF``; after a fixed delay it reconnects.  There is no retry
  ceiling and no delay growth.
- At most one read is outstanding.  A tick that fires while the previous
  read is still pending is skipped, not queued.
- ``stop()`` cancels every task it owns and closes the transport; no window
  is dispatched after it returns.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> BACKING_OFF -> CONNECTING -> ...

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Report every failed read through on_read_error

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from enum import Enum

from pymodbus.client import AsyncModbusTcpClient

from sunspec_bridge.src.decoder import RegisterWindow
from sunspec_bridge.src.registers import WINDOW_LENGTH, WINDOW_START

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RECONNECT_DELAY_S: float = 5.0
"""Fixed delay between a transport close and the next connection attempt."""

MODBUS_TIMEOUT_S: float = 5.0
"""Upper bound for one register window read in seconds."""


class ConnectionState(str, Enum):
    """Lifecycle of the poll session's transport."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKING_OFF = "backing_off"


WindowHandler = Callable[[RegisterWindow], None]
StateHandler = Callable[[ConnectionState], None]
ErrorCountHandler = Callable[[int], None]


# ---------------------------------------------------------------------------
# Poll session
# ---------------------------------------------------------------------------


class PollSession:
    """Owns the inverter connection and drives the poll tick.

    Every successfully read window is passed to *on_window* synchronously on
    the event loop, so window processing for one tick completes before the
    next tick can dispatch anything.

    Args:
        host: Inverter IP address or hostname.
        port: Modbus TCP port (default 502).
        slave_id: Modbus unit ID (default 1).
        poll_interval_ms: Milliseconds between read ticks.
        on_window: Called with each successfully read window.
        on_state_change: Optional callback for connection state transitions.
        on_read_error: Optional callback with the running read error count,
            called after every failed read.
        read_timeout_s: Timeout for one window read.
        reconnect_delay_s: Delay between a transport close and reconnecting.
        window_start: First register address of the window.
        window_length: Number of registers in the window.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 502,
        slave_id: int = 1,
        poll_interval_ms: int = 10_000,
        on_window: WindowHandler,
        on_state_change: StateHandler | None = None,
        on_read_error: ErrorCountHandler | None = None,
        read_timeout_s: float = MODBUS_TIMEOUT_S,
        reconnect_delay_s: float = RECONNECT_DELAY_S,
        window_start: int = WINDOW_START,
        window_length: int = WINDOW_LENGTH,
    ) -> None:
        self._host = host
        self._port = port
        self._slave_id = slave_id
        self._poll_interval_s = poll_interval_ms / 1000
        self._on_window = on_window
        self._on_state_change = on_state_change
        self._on_read_error = on_read_error
        self._read_timeout_s = read_timeout_s
        self._reconnect_delay_s = reconnect_delay_s
        self._window_start = window_start
        self._window_length = window_length

        self._state = ConnectionState.DISCONNECTED
        self._client: AsyncModbusTcpClient | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._connection_lost = asyncio.Event()
        self._stopped = True

        self.reads_ok: int = 0
        self.read_errors: int = 0
        self.ticks_skipped: int = 0

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def running(self) -> bool:
        """True between :meth:`start` and :meth:`stop`."""
        return self._supervisor is not None and not self._supervisor.done()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start connecting and polling; must be called from the event loop."""
        if self.running:
            return
        self._stopped = False
        self._supervisor = asyncio.create_task(
            self._supervise(),
            name=f"poll-session:{self._host}:{self._port}",
        )

    async def stop(self) -> None:
        """Cancel the tick loop and any pending read, then close the transport."""
        self._stopped = True
        tasks = [t for t in (self._read_task, self._supervisor) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._read_task = None
        self._supervisor = None
        self._close_client()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Poll session to %s:%d stopped", self._host, self._port)

    # ------------------------------------------------------------------
    # Connection supervisor
    # ------------------------------------------------------------------

    async def _supervise(self) -> None:
        """Connect, poll until the transport closes, back off, repeat."""
        while not self._stopped:
            self._set_state(ConnectionState.CONNECTING)
            client = await self._connect()
            if client is not None:
                self._set_state(ConnectionState.CONNECTED)
                await self._run_ticks(client)
            self._close_client()

            self._set_state(ConnectionState.BACKING_OFF)
            logger.info(
                "Reconnecting to %s:%d in %.1fs",
                self._host,
                self._port,
                self._reconnect_delay_s,
            )
            await asyncio.sleep(self._reconnect_delay_s)

    async def _connect(self) -> AsyncModbusTcpClient | None:
        """Open a new transport; return the client, or None on failure."""
        # pymodbus must not reconnect on its own; the supervisor does that.
        self._client = AsyncModbusTcpClient(
            self._host,
            port=self._port,
            timeout=self._read_timeout_s,
            reconnect_delay=0,
        )
        try:
            ok = await self._client.connect()
        except Exception:
            logger.warning(
                "Failed to connect to Modbus device %s:%d",
                self._host,
                self._port,
                exc_info=True,
            )
            return None

        if not ok:
            logger.warning(
                "Failed to connect to Modbus device %s:%d (connect returned False)",
                self._host,
                self._port,
            )
            return None

        logger.info("Modbus connected to %s:%d", self._host, self._port)
        return self._client

    def _close_client(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Tick loop
    # ------------------------------------------------------------------

    async def _run_ticks(self, client: AsyncModbusTcpClient) -> None:
        """Read once immediately, then once per interval, until disconnected."""
        self._connection_lost.clear()
        self._tick(client)
        try:
            while True:
                # Use wait with timeout so a lost connection ends the loop early
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._connection_lost.wait(),
                        timeout=self._poll_interval_s,
                    )
                if self._connection_lost.is_set() or not client.connected:
                    logger.info(
                        "Modbus connection to %s:%d lost", self._host, self._port
                    )
                    return
                self._tick(client)
        finally:
            await self._cancel_read()

    def _tick(self, client: AsyncModbusTcpClient) -> None:
        """Issue one read unless the previous one is still outstanding."""
        if self._read_task is not None and not self._read_task.done():
            self.ticks_skipped += 1
            logger.debug("Previous read still pending, skipping tick")
            return
        self._read_task = asyncio.create_task(
            self._read_once(client),
            name="poll-session:read",
        )

    async def _cancel_read(self) -> None:
        task = self._read_task
        self._read_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _read_once(self, client: AsyncModbusTcpClient) -> None:
        """Read the register window and dispatch it; never raises."""
        try:
            response = await asyncio.wait_for(
                client.read_holding_registers(
                    self._window_start,
                    count=self._window_length,
                    device_id=self._slave_id,
                ),
                timeout=self._read_timeout_s,
            )
        except TimeoutError:
            self._record_read_error()
            logger.warning(
                "Modbus read of %d registers at %d timed out after %.1fs",
                self._window_length,
                self._window_start,
                self._read_timeout_s,
            )
            return
        except Exception:
            self._record_read_error()
            if not client.connected:
                self._connection_lost.set()
                return
            logger.warning("Modbus read failed", exc_info=True)
            return

        if response.isError():
            self._record_read_error()
            logger.warning(
                "Modbus error reading window (address=%d, count=%d): %s",
                self._window_start,
                self._window_length,
                response,
            )
            return

        values = tuple(response.registers)
        if len(values) != self._window_length:
            self._record_read_error()
            logger.warning(
                "Modbus returned %d registers, expected %d",
                len(values),
                self._window_length,
            )
            return

        if self._stopped:
            return

        self.reads_ok += 1
        window = RegisterWindow(start=self._window_start, values=values)
        try:
            self._on_window(window)
        except Exception:
            logger.error("Window processing error", exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.warning("State change callback failed", exc_info=True)

    def _record_read_error(self) -> None:
        self.read_errors += 1
        if self._on_read_error is not None:
            try:
                self._on_read_error(self.read_errors)
            except Exception:
                logger.warning("Read error callback failed", exc_info=True)
