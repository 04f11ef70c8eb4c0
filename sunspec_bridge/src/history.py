"""
Append-only history log of channel metrics using async SQLite.

Every snapshot received from the sink fan-out is stored as one timestamped
entry.  Entries mirror the classic energy/weather history format: energy
channels store ``{"time", "power"}`` and state channels store
``{"time", "temp"}``, with ``time`` in epoch seconds.  Energy events are not
recorded here.

The log is backed by a SQLite database file in WAL mode so it survives
process restarts; rows are never updated or deleted by this module.

Operations:
- receive(item): append one entry for a snapshot.
- add_entry(channel, entry): append an arbitrary entry dict.
- entries(channel, limit): oldest-first entries for a channel.
- count(channel): number of stored entries.
- close(): close the underlying database connection.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite

from sunspec_bridge.src.models import EnergyEvent, MetricsSnapshot

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS history (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    channel TEXT NOT NULL,
    time INTEGER NOT NULL,
    entry TEXT NOT NULL
);
"""

_CREATE_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS history_channel_time ON history (channel, time);
"""

_INSERT_SQL = """\
INSERT INTO history (channel, time, entry) VALUES (?, ?, ?);
"""

_ENTRIES_SQL = """\
SELECT entry
FROM history
WHERE channel = ?
ORDER BY rowid ASC
LIMIT ?;
"""

_COUNT_SQL = "SELECT COUNT(*) FROM history WHERE channel = ?;"


def snapshot_entry(snapshot: MetricsSnapshot) -> dict[str, Any]:
    """Build the history entry dict for *snapshot*."""
    entry: dict[str, Any] = {"time": round(snapshot.ts.timestamp())}
    if snapshot.temperature_c is not None:
        entry["temp"] = snapshot.temperature_c
    if snapshot.power_w is not None:
        entry["power"] = snapshot.power_w
    return entry


class HistoryRecorder:
    """Async SQLite backed history sink.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with HistoryRecorder(path="/data/history.db") as history:
            await history.receive(snapshot)
            rows = await history.entries("Inverter AC", limit=100)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.execute(_CREATE_INDEX_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> HistoryRecorder:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def receive(self, item: MetricsSnapshot | EnergyEvent) -> None:
        """Append an entry for a snapshot; energy events are ignored."""
        if isinstance(item, EnergyEvent):
            return
        await self.add_entry(item.channel, snapshot_entry(item))

    async def add_entry(self, channel: str, entry: dict[str, Any]) -> None:
        """Append *entry* (must contain an integer ``time``) for *channel*."""
        assert self._db is not None, "History not opened. Call open() or use async with."
        await self._db.execute(
            _INSERT_SQL, (channel, int(entry["time"]), json.dumps(entry))
        )
        await self._db.commit()

    async def entries(self, channel: str, limit: int = 1000) -> list[dict[str, Any]]:
        """Return up to *limit* oldest entries for *channel*.

        Returns:
            List of entry dicts in insertion order; empty if *limit* < 1.
        """
        assert self._db is not None, "History not opened. Call open() or use async with."
        if limit < 1:
            return []
        cursor = await self._db.execute(_ENTRIES_SQL, (channel, limit))
        rows = await cursor.fetchall()
        return [json.loads(row[0]) for row in rows]

    async def count(self, channel: str) -> int:
        assert self._db is not None, "History not opened. Call open() or use async with."
        cursor = await self._db.execute(_COUNT_SQL, (channel,))
        row = await cursor.fetchone()
        return row[0]
