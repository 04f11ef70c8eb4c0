"""
In-memory live-value cache sink.

Keeps the most recent snapshot per channel and the most recent energy event
per (channel, period) so callers can read current values synchronously.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from sunspec_bridge.src.models import EnergyEvent, EnergyPeriod, MetricsSnapshot


class LiveValueCache:
    """Last-value cache fed by the sink fan-out."""

    def __init__(self) -> None:
        self._snapshots: dict[str, MetricsSnapshot] = {}
        self._events: dict[tuple[str, EnergyPeriod], EnergyEvent] = {}

    async def receive(self, item: MetricsSnapshot | EnergyEvent) -> None:
        if isinstance(item, EnergyEvent):
            self._events[(item.channel, item.period)] = item
        else:
            self._snapshots[item.channel] = item

    def get(self, channel: str) -> MetricsSnapshot | None:
        """Return the latest snapshot for *channel*, or None if none yet."""
        return self._snapshots.get(channel)

    def get_event(self, channel: str, period: EnergyPeriod) -> EnergyEvent | None:
        return self._events.get((channel, period))

    def channels(self) -> list[str]:
        return sorted(self._snapshots)
