"""
Sink fan-out: deliver every metrics item to every registered sink.

Each sink gets its own bounded asyncio queue and worker task, so:

- ``publish()`` never blocks the poll loop (it only enqueues).
- A slow sink only delays itself; other sinks keep receiving.
- Each sink receives items in the order they were published.
- A sink that raises is logged and keeps receiving later items.

When a sink's queue is full the new item is dropped for that sink only.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Protocol, runtime_checkable

from sunspec_bridge.src.metrics import MetricsItem

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE: int = 100


class SinkError(Exception):
    """A sink could not deliver an item (e.g. its downstream is offline)."""


@runtime_checkable
class Sink(Protocol):
    """Anything that can receive metrics snapshots and energy events."""

    async def receive(self, item: MetricsItem) -> None: ...


class _SinkWorker:
    """Queue plus delivery task for one sink."""

    def __init__(self, name: str, sink: Sink, queue_size: int) -> None:
        self.name = name
        self.sink = sink
        self.queue: asyncio.Queue[MetricsItem] = asyncio.Queue(maxsize=queue_size)
        self.task: asyncio.Task[None] | None = None
        self.delivered: int = 0
        self.failed: int = 0
        self.dropped: int = 0

    def start(self) -> None:
        self.task = asyncio.create_task(self._run(), name=f"sink:{self.name}")

    async def _run(self) -> None:
        while True:
            item = await self.queue.get()
            try:
                await self.sink.receive(item)
                self.delivered += 1
            except Exception:
                self.failed += 1
                logger.warning(
                    "Sink '%s' failed to receive %s for channel '%s'",
                    self.name,
                    type(item).__name__,
                    item.channel,
                    exc_info=True,
                )
            finally:
                self.queue.task_done()


class SinkFanout:
    """Broadcasts metrics items to any number of sinks, including zero.

    Args:
        queue_size: Maximum number of undelivered items buffered per sink.

    Usage::

        fanout = SinkFanout()
        fanout.add_sink("cache", cache)
        fanout.start()
        fanout.publish(snapshot)
        await fanout.aclose()
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._workers: dict[str, _SinkWorker] = {}
        self._started = False

    @property
    def sink_names(self) -> list[str]:
        return list(self._workers)

    def add_sink(self, name: str, sink: Sink) -> None:
        """Register *sink* under *name*; starts its worker if already running."""
        if name in self._workers:
            raise ValueError(f"Sink '{name}' already registered")
        worker = _SinkWorker(name, sink, self._queue_size)
        self._workers[name] = worker
        if self._started:
            worker.start()

    def start(self) -> None:
        """Start one delivery task per sink; must run on the event loop."""
        if self._started:
            return
        self._started = True
        for worker in self._workers.values():
            worker.start()

    def publish(self, item: MetricsItem) -> None:
        """Enqueue *item* for every sink without waiting for delivery."""
        for worker in self._workers.values():
            try:
                worker.queue.put_nowait(item)
            except asyncio.QueueFull:
                worker.dropped += 1
                logger.warning(
                    "Sink '%s' queue full (%d), dropping %s for channel '%s'",
                    worker.name,
                    self._queue_size,
                    type(item).__name__,
                    item.channel,
                )

    def publish_all(self, items: list[MetricsItem]) -> None:
        for item in items:
            self.publish(item)

    def stats(self) -> dict[str, dict[str, int]]:
        """Per-sink delivered/failed/dropped/pending counters."""
        return {
            name: {
                "delivered": w.delivered,
                "failed": w.failed,
                "dropped": w.dropped,
                "pending": w.queue.qsize(),
            }
            for name, w in self._workers.items()
        }

    async def aclose(self, drain_timeout_s: float = 5.0) -> None:
        """Give queued items up to *drain_timeout_s* to drain, then stop workers."""
        if self._started and drain_timeout_s > 0:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(w.queue.join() for w in self._workers.values())),
                    timeout=drain_timeout_s,
                )
            except TimeoutError:
                logger.warning("Sink queues not drained within %.1fs", drain_timeout_s)

        tasks = [w.task for w in self._workers.values() if w.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for worker in self._workers.values():
            worker.task = None
        self._started = False
