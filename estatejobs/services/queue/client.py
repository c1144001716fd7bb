from __future__ import annotations

import logging
from typing import Protocol

from estatejobs.core.errors import QueueUnavailableError
from estatejobs.domain.jobs import AiJobPayload, JobKind
from estatejobs.services.queue.metrics import COUNTER_NAMES, MetricsSnapshot, empty_snapshot


logger = logging.getLogger(__name__)

# Totals published by every worker process, one field per "<queue>:<counter>".
QUEUE_METRICS_KEY = "estatejobs:queue-metrics"


class JobWriter(Protocol):
    async def enqueue(self, kind: JobKind, payload: AiJobPayload, *, job_id: str) -> str: ...

    async def ping(self) -> bool: ...


class AiQueueClient:
    """Writes AI jobs onto their per-kind arq queues over a shared connection."""

    def __init__(self, connection) -> None:  # noqa: ANN001 - ArqRedis or a test double
        self._connection = connection

    async def ping(self) -> bool:
        try:
            return bool(await self._connection.ping())
        except Exception as exc:  # noqa: BLE001 - normalise redis errors for callers
            raise QueueUnavailableError(f"broker ping failed: {exc}") from exc

    async def enqueue(self, kind: JobKind, payload: AiJobPayload, *, job_id: str) -> str:
        spec = kind.spec
        try:
            job = await self._connection.enqueue_job(
                spec.job_name,
                payload.model_dump(),
                _job_id=job_id,
                _queue_name=spec.queue_name,
            )
        except Exception as exc:  # noqa: BLE001 - normalise redis errors for callers
            raise QueueUnavailableError(f"enqueue {spec.job_name} failed: {exc}") from exc
        if job is None:
            # arq returns None when the id is already queued or running; the broker deduplicated it.
            logger.debug("queue.enqueue.duplicate queue=%s id=%s", spec.queue_name, job_id)
            return job_id
        return job.job_id

    async def queue_depth(self, kind: JobKind) -> int:
        # arq keeps each queue as a sorted set keyed by the queue name.
        try:
            return int(await self._connection.zcard(kind.spec.queue_name))
        except Exception as exc:  # noqa: BLE001 - normalise redis errors for callers
            raise QueueUnavailableError(f"queue depth for {kind.value} unavailable: {exc}") from exc

    async def publish_metrics(self, delta: MetricsSnapshot) -> None:
        # One transaction so a failed flush can be retried without double counting.
        try:
            async with self._connection.pipeline(transaction=True) as pipe:
                for queue, counters in delta.items():
                    for name in COUNTER_NAMES:
                        if counters[name]:
                            pipe.hincrby(QUEUE_METRICS_KEY, f"{queue}:{name}", counters[name])
                await pipe.execute()
        except Exception as exc:  # noqa: BLE001 - normalise redis errors for callers
            raise QueueUnavailableError(f"metrics publish failed: {exc}") from exc

    async def published_metrics(self) -> MetricsSnapshot:
        try:
            raw = await self._connection.hgetall(QUEUE_METRICS_KEY)
        except Exception as exc:  # noqa: BLE001 - normalise redis errors for callers
            raise QueueUnavailableError(f"metrics read failed: {exc}") from exc
        snapshot = empty_snapshot()
        for field, value in raw.items():
            name = field.decode() if isinstance(field, bytes) else str(field)
            queue, _, counter = name.rpartition(":")
            if queue in snapshot and counter in COUNTER_NAMES:
                snapshot[queue][counter] = int(value)
        return snapshot

    async def clear_published_metrics(self) -> None:
        try:
            await self._connection.delete(QUEUE_METRICS_KEY)
        except Exception as exc:  # noqa: BLE001 - normalise redis errors for callers
            raise QueueUnavailableError(f"metrics reset failed: {exc}") from exc
