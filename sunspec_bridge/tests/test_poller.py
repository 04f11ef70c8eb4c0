"""
Tests for the persistent Modbus TCP poll session.

Verifies the session that keeps one AsyncModbusTcpClient connected to the
inverter, reads the 38-register window on every tick, backs off after a
transport close, and never has more than one read in flight.  Tests use a
mocked AsyncModbusTcpClient and short intervals.

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Cover the per-read error callback

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sunspec_bridge.src.decoder import RegisterWindow
from sunspec_bridge.src.poller import ConnectionState, PollSession
from sunspec_bridge.src.registers import WINDOW_LENGTH, WINDOW_START

_CLIENT_PATH = "sunspec_bridge.src.poller.AsyncModbusTcpClient"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_response(registers: list[int], is_error: bool = False) -> MagicMock:
    """Create a mock pymodbus response PDU."""
    resp = MagicMock()
    resp.isError.return_value = is_error
    resp.registers = registers
    return resp


def _window_values() -> list[int]:
    return list(range(1, WINDOW_LENGTH + 1))


def _make_mock_client(
    connect_ok: bool = True,
    response: MagicMock | None = None,
) -> AsyncMock:
    """Create a mocked AsyncModbusTcpClient that returns *response*."""
    client = AsyncMock()
    client.connect = AsyncMock(return_value=connect_ok)
    client.close = MagicMock()
    client.connected = connect_ok
    if response is None:
        response = _make_response(_window_values())
    client.read_holding_registers = AsyncMock(return_value=response)
    return client


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds or *timeout* elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def _session(
    windows: list[RegisterWindow],
    states: list[ConnectionState] | None = None,
    **kwargs: object,
) -> PollSession:
    params: dict[str, object] = {
        "host": "10.0.0.5",
        "poll_interval_ms": 10_000,
        "reconnect_delay_s": 10.0,
        "on_window": windows.append,
    }
    if states is not None:
        params["on_state_change"] = states.append
    params.update(kwargs)
    return PollSession(**params)  # type: ignore[arg-type]


# ===========================================================================
# Connect and first read
# ===========================================================================


class TestConnectAndRead:
    """The session connects and reads immediately on connect."""

    @pytest.mark.asyncio
    async def test_creates_client_without_library_reconnect(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client()
        with patch(_CLIENT_PATH, return_value=client) as mock_cls:
            session = _session(windows, read_timeout_s=3.0)
            session.start()
            await _wait_until(lambda: len(windows) == 1)
            await session.stop()

        mock_cls.assert_called_once_with(
            "10.0.0.5", port=502, timeout=3.0, reconnect_delay=0
        )
        client.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reads_window_immediately_on_connect(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client()
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows, slave_id=3)
            session.start()
            await _wait_until(lambda: len(windows) == 1)

            assert session.state is ConnectionState.CONNECTED
            await session.stop()

        client.read_holding_registers.assert_awaited_once_with(
            WINDOW_START, count=WINDOW_LENGTH, device_id=3
        )
        assert windows[0].start == WINDOW_START
        assert windows[0].values == tuple(_window_values())
        assert session.reads_ok == 1

    @pytest.mark.asyncio
    async def test_reads_repeat_every_interval(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client()
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows, poll_interval_ms=20)
            session.start()
            await _wait_until(lambda: len(windows) >= 3)
            await session.stop()

        assert client.read_holding_registers.await_count >= 3

    @pytest.mark.asyncio
    async def test_state_transitions_on_connect(self) -> None:
        windows: list[RegisterWindow] = []
        states: list[ConnectionState] = []
        with patch(_CLIENT_PATH, return_value=_make_mock_client()):
            session = _session(windows, states)
            session.start()
            await _wait_until(lambda: len(windows) == 1)
            await session.stop()

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]


# ===========================================================================
# Read failures keep the connection
# ===========================================================================


class TestReadFailures:
    """A failed read is skipped and the session stays connected."""

    @pytest.mark.asyncio
    async def test_modbus_error_response_skipped(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client(response=_make_response([], is_error=True))
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows)
            session.start()
            await _wait_until(lambda: session.read_errors == 1)

            assert session.state is ConnectionState.CONNECTED
            assert windows == []
            client.close.assert_not_called()
            await session.stop()

    @pytest.mark.asyncio
    async def test_short_response_skipped(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client(response=_make_response([1, 2, 3]))
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows)
            session.start()
            await _wait_until(lambda: session.read_errors == 1)
            await session.stop()

        assert windows == []

    @pytest.mark.asyncio
    async def test_exception_while_connected_keeps_session(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client()
        client.read_holding_registers = AsyncMock(side_effect=Exception("bad frame"))
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows)
            with caplog.at_level(logging.WARNING):
                session.start()
                await _wait_until(lambda: session.read_errors == 1)

            assert session.state is ConnectionState.CONNECTED
            await session.stop()

        assert "Modbus read failed" in caplog.text

    @pytest.mark.asyncio
    async def test_read_timeout_counts_error(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client()

        async def _slow_read(*args: object, **kwargs: object) -> MagicMock:
            await asyncio.sleep(5)
            return _make_response(_window_values())

        client.read_holding_registers = AsyncMock(side_effect=_slow_read)
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows, read_timeout_s=0.05)
            session.start()
            await _wait_until(lambda: session.read_errors == 1)

            assert session.state is ConnectionState.CONNECTED
            assert windows == []
            await session.stop()

    @pytest.mark.asyncio
    async def test_window_handler_error_does_not_stop_polling(self) -> None:
        client = _make_mock_client()
        handler = MagicMock(side_effect=RuntimeError("boom"))
        with patch(_CLIENT_PATH, return_value=client):
            session = PollSession(
                host="10.0.0.5", poll_interval_ms=20, on_window=handler
            )
            session.start()
            await _wait_until(lambda: handler.call_count >= 2)
            await session.stop()

        assert session.reads_ok >= 2

    @pytest.mark.asyncio
    async def test_state_callback_error_is_contained(self) -> None:
        windows: list[RegisterWindow] = []
        with patch(_CLIENT_PATH, return_value=_make_mock_client()):
            session = _session(
                windows, on_state_change=MagicMock(side_effect=RuntimeError("x"))
            )
            session.start()
            await _wait_until(lambda: len(windows) == 1)
            await session.stop()

        assert session.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_every_failed_read_reported(self) -> None:
        windows: list[RegisterWindow] = []
        counts: list[int] = []
        client = _make_mock_client(response=_make_response([], is_error=True))
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(
                windows, poll_interval_ms=20, on_read_error=counts.append
            )
            session.start()
            await _wait_until(lambda: len(counts) >= 3)

            # No state change happens while the reads keep failing.
            assert session.state is ConnectionState.CONNECTED
            await session.stop()

        assert counts[:3] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_read_error_callback_failure_is_contained(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client(response=_make_response([1, 2, 3]))
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(
                windows,
                poll_interval_ms=20,
                on_read_error=MagicMock(side_effect=OSError("read-only")),
            )
            session.start()
            await _wait_until(lambda: session.read_errors >= 2)
            await session.stop()

        assert windows == []


# ===========================================================================
# Transport close and reconnect
# ===========================================================================


class TestReconnect:
    """A closed transport backs off for the fixed delay, then reconnects."""

    @pytest.mark.asyncio
    async def test_transport_close_backs_off_then_reconnects(self) -> None:
        loop = asyncio.get_running_loop()
        windows: list[RegisterWindow] = []
        transitions: list[tuple[ConnectionState, float]] = []

        dropping = _make_mock_client()

        async def _drop(*args: object, **kwargs: object) -> MagicMock:
            dropping.connected = False
            raise ConnectionError("connection reset by peer")

        dropping.read_holding_registers = AsyncMock(side_effect=_drop)
        healthy = _make_mock_client()

        with patch(_CLIENT_PATH, side_effect=[dropping, healthy]):
            session = PollSession(
                host="10.0.0.5",
                poll_interval_ms=10_000,
                reconnect_delay_s=0.1,
                on_window=windows.append,
                on_state_change=lambda s: transitions.append((s, loop.time())),
            )
            session.start()
            await _wait_until(lambda: len(windows) == 1)
            await session.stop()

        states = [s for s, _ in transitions]
        assert states[:5] == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.BACKING_OFF,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        backoff_elapsed = transitions[3][1] - transitions[2][1]
        assert backoff_elapsed >= 0.1 - 0.01
        dropping.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_refused_backs_off(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client(connect_ok=False)
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows)
            session.start()
            await _wait_until(lambda: session.state is ConnectionState.BACKING_OFF)
            await session.stop()

        client.read_holding_registers.assert_not_awaited()
        assert windows == []

    @pytest.mark.asyncio
    async def test_connect_exception_backs_off(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client()
        client.connect = AsyncMock(side_effect=OSError("no route to host"))
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows)
            session.start()
            await _wait_until(lambda: session.state is ConnectionState.BACKING_OFF)

            assert session.running
            await session.stop()

    @pytest.mark.asyncio
    async def test_retries_without_ceiling(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client(connect_ok=False)
        with patch(_CLIENT_PATH, return_value=client) as mock_cls:
            session = _session(windows, reconnect_delay_s=0.01)
            session.start()
            await _wait_until(lambda: mock_cls.call_count >= 5)
            await session.stop()


# ===========================================================================
# Skip-on-overlap
# ===========================================================================


class TestSkipOnOverlap:
    """A tick that fires while a read is pending is skipped, not queued."""

    @pytest.mark.asyncio
    async def test_slow_read_skips_ticks(self) -> None:
        windows: list[RegisterWindow] = []
        release = asyncio.Event()
        in_flight = 0
        max_in_flight = 0

        async def _blocked_read(*args: object, **kwargs: object) -> MagicMock:
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            try:
                await release.wait()
            finally:
                in_flight -= 1
            return _make_response(_window_values())

        client = _make_mock_client()
        client.read_holding_registers = AsyncMock(side_effect=_blocked_read)
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows, poll_interval_ms=20, read_timeout_s=5.0)
            session.start()
            await _wait_until(lambda: session.ticks_skipped >= 3)

            assert client.read_holding_registers.await_count == 1
            assert max_in_flight == 1
            assert windows == []

            release.set()
            await _wait_until(lambda: len(windows) >= 1)
            await session.stop()

        assert max_in_flight == 1


# ===========================================================================
# Stop
# ===========================================================================


class TestStop:
    """stop() cancels owned tasks, closes the transport, dispatches nothing."""

    @pytest.mark.asyncio
    async def test_stop_closes_client_and_resets_state(self) -> None:
        windows: list[RegisterWindow] = []
        client = _make_mock_client()
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows)
            session.start()
            await _wait_until(lambda: len(windows) == 1)
            await session.stop()

        client.close.assert_called_once()
        assert session.state is ConnectionState.DISCONNECTED
        assert not session.running

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_read(self) -> None:
        windows: list[RegisterWindow] = []
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def _hanging_read(*args: object, **kwargs: object) -> MagicMock:
            started.set()
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return _make_response(_window_values())

        client = _make_mock_client()
        client.read_holding_registers = AsyncMock(side_effect=_hanging_read)
        with patch(_CLIENT_PATH, return_value=client):
            session = _session(windows, read_timeout_s=30.0)
            session.start()
            await asyncio.wait_for(started.wait(), timeout=1.0)
            await session.stop()

        assert cancelled.is_set()
        assert windows == []

    @pytest.mark.asyncio
    async def test_no_dispatch_after_stop(self) -> None:
        windows: list[RegisterWindow] = []
        with patch(_CLIENT_PATH, return_value=_make_mock_client()):
            session = _session(windows, poll_interval_ms=10)
            session.start()
            await _wait_until(lambda: len(windows) >= 1)
            await session.stop()
            count = len(windows)
            await asyncio.sleep(0.05)

        assert len(windows) == count

    @pytest.mark.asyncio
    async def test_stop_before_start_is_safe(self) -> None:
        session = _session([])

        await session.stop()

        assert session.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self) -> None:
        windows: list[RegisterWindow] = []
        with patch(_CLIENT_PATH, return_value=_make_mock_client()) as mock_cls:
            session = _session(windows)
            session.start()
            session.start()
            await _wait_until(lambda: len(windows) == 1)
            await session.stop()

        mock_cls.assert_called_once()
