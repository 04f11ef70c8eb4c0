"""
Health file writer for the bridge daemon.

Writes a JSON health file at a configurable path with three fields:
- last_poll_ts: ISO timestamp of the most recent successfully read window.
- connection_state: Current Modbus connection state.
- read_errors: Number of failed reads since start.

The file is overwritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes bridge health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_poll_ts: str | None = None
        self._connection_state: str = "disconnected"
        self._read_errors: int = 0

    def record_poll(self) -> None:
        """Record a successful window read and write health file."""
        self._last_poll_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def set_connection_state(self, state: str) -> None:
        """Update the connection state and write health file."""
        self._connection_state = state
        self._write()

    def set_read_errors(self, count: int) -> None:
        self._read_errors = count
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_poll_ts": self._last_poll_ts,
            "connection_state": self._connection_state,
            "read_errors": self._read_errors,
        }
        self.path.write_text(json.dumps(data))
