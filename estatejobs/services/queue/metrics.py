from __future__ import annotations

import asyncio
import logging
from typing import Protocol, TypedDict

from estatejobs.domain.jobs import JobKind


logger = logging.getLogger(__name__)

# Workers flush their increments on this cadence; the ops endpoint reads the shared totals.
DEFAULT_METRICS_PUBLISH_INTERVAL_S = 5.0

COUNTER_NAMES = ("started", "completed", "failed")


class QueueCounters(TypedDict):
    started: int
    completed: int
    failed: int


MetricsSnapshot = dict[str, QueueCounters]


def _zero() -> QueueCounters:
    return {"started": 0, "completed": 0, "failed": 0}


def empty_snapshot() -> MetricsSnapshot:
    return {kind.value: _zero() for kind in JobKind}


def metrics_delta(current: MetricsSnapshot, previous: MetricsSnapshot) -> MetricsSnapshot:
    delta = empty_snapshot()
    for queue, counters in current.items():
        before = previous.get(queue) or _zero()
        for name in COUNTER_NAMES:
            # A local reset leaves counters below what was published; count again from zero.
            value = counters[name] - before[name]
            delta[queue][name] = value if value >= 0 else counters[name]
    return delta


def has_increments(delta: MetricsSnapshot) -> bool:
    return any(counters[name] for counters in delta.values() for name in COUNTER_NAMES)


class QueueMetrics:
    """In-process job counters per kind; ephemeral by nature and reset on restart."""

    def __init__(self) -> None:
        self._counters: dict[JobKind, QueueCounters] = {kind: _zero() for kind in JobKind}

    def record_started(self, kind: JobKind) -> None:
        self._counters[kind]["started"] += 1

    def record_completed(self, kind: JobKind) -> None:
        self._counters[kind]["completed"] += 1

    def record_failed(self, kind: JobKind) -> None:
        # Counted per failed delivery attempt, not per terminally failed job.
        self._counters[kind]["failed"] += 1

    def snapshot(self) -> MetricsSnapshot:
        # Copy each counter dict so callers cannot mutate live state.
        return {kind.value: QueueCounters(**counters) for kind, counters in self._counters.items()}

    def reset(self) -> None:
        for kind in JobKind:
            self._counters[kind] = _zero()


class MetricsWriter(Protocol):
    async def publish_metrics(self, delta: MetricsSnapshot) -> None: ...


class MetricsPublisher:
    """Periodically adds this process's new counts to the totals kept in Redis.

    Workers and the API run in different processes, so the API cannot read the
    workers' ``QueueMetrics`` directly. Each flush publishes only what changed
    since the last successful flush; a failed flush is retried on the next tick.
    """

    def __init__(
        self,
        metrics: QueueMetrics,
        writer: MetricsWriter,
        *,
        interval_s: float = DEFAULT_METRICS_PUBLISH_INTERVAL_S,
    ) -> None:
        self._metrics = metrics
        self._writer = writer
        self._interval_s = interval_s
        self._published = empty_snapshot()
        self._ticker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._ticker is not None

    async def flush(self) -> None:
        current = self._metrics.snapshot()
        delta = metrics_delta(current, self._published)
        if has_increments(delta):
            await self._writer.publish_metrics(delta)
        self._published = current

    def start(self) -> None:
        if self._ticker is None:
            self._ticker = asyncio.create_task(self._tick())

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            await self._flush_safely()

    async def _flush_safely(self) -> None:
        try:
            await self.flush()
        except Exception:  # noqa: BLE001 - counts stay pending until the next flush
            logger.warning("queue.metrics.publish_failed", exc_info=True)

    async def stop(self) -> None:
        ticker = self._ticker
        self._ticker = None
        if ticker is not None:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)
        await self._flush_safely()
