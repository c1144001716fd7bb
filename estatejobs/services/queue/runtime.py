from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Callable

from arq.worker import Worker

from estatejobs.domain.jobs import AiJobPayload, JobKind, utc_now
from estatejobs.services.queue.client import AiQueueClient
from estatejobs.services.queue.config import EnvLike, QueueRuntimeConfig, resolve_queue_runtime_config
from estatejobs.services.queue.connection import QueueConnectionManager
from estatejobs.services.queue.contracts import AiJobHandlers, ReviewQueueWriter, VocalProcessingStore
from estatejobs.services.queue.metrics import (
    DEFAULT_METRICS_PUBLISH_INTERVAL_S,
    MetricsPublisher,
    MetricsSnapshot,
    QueueMetrics,
)
from estatejobs.services.queue.processors import AiProcessor, create_ai_processor_map
from estatejobs.services.queue.recovery import (
    Clock,
    VocalRecoveryLoop,
    VocalRecoverySweeper,
    resolve_vocal_recovery_config,
)
from estatejobs.services.queue.workers import WorkerInstrumentation, create_ai_workers, stop_ai_worker


logger = logging.getLogger(__name__)

WorkerFactory = Callable[..., dict[JobKind, Worker]]


class QueueRuntime:
    """Process-scoped queue state: connection, metrics, workers and the recovery loop.

    The worker entry point and the API each own one instance (see
    ``get_queue_runtime``); tests build their own with in-memory collaborators.
    Domain collaborators default to the database-backed services and are only
    built when first needed.
    """

    def __init__(
        self,
        *,
        env: EnvLike | None = None,
        connections: QueueConnectionManager | None = None,
        metrics: QueueMetrics | None = None,
        vocals: VocalProcessingStore | None = None,
        review_queue: ReviewQueueWriter | None = None,
        handlers: AiJobHandlers | None = None,
        worker_factory: WorkerFactory = create_ai_workers,
        clock: Clock = utc_now,
        metrics_publish_interval_s: float = DEFAULT_METRICS_PUBLISH_INTERVAL_S,
    ) -> None:
        self._env = env
        self.config: QueueRuntimeConfig = resolve_queue_runtime_config(env)
        self.connections = connections or QueueConnectionManager()
        self.metrics = metrics or QueueMetrics()
        self._vocals = vocals
        self._review_queue = review_queue
        self._handlers = handlers
        self._worker_factory = worker_factory
        self._clock = clock
        self._instrumentation: WorkerInstrumentation | None = None
        self._workers: dict[JobKind, Worker] | None = None
        self._worker_tasks: dict[JobKind, asyncio.Task[None]] = {}
        self._metrics_publish_interval_s = metrics_publish_interval_s
        self._metrics_publisher: MetricsPublisher | None = None
        self._recovery_loop: VocalRecoveryLoop | None = None

    @property
    def vocals(self) -> VocalProcessingStore:
        if self._vocals is None:
            from estatejobs.services.vocals import VocalsService

            self._vocals = VocalsService()
        return self._vocals

    @property
    def review_queue(self) -> ReviewQueueWriter:
        if self._review_queue is None:
            from estatejobs.services.review_queue import ReviewQueueService

            self._review_queue = ReviewQueueService()
        return self._review_queue

    @property
    def instrumentation(self) -> WorkerInstrumentation:
        if self._instrumentation is None:
            self._instrumentation = WorkerInstrumentation(self.metrics, self.vocals, self.review_queue)
        return self._instrumentation

    @property
    def workers(self) -> dict[JobKind, Worker] | None:
        return self._workers

    @property
    def recovery_loop(self) -> VocalRecoveryLoop | None:
        return self._recovery_loop

    def client(self) -> AiQueueClient:
        # Resolve per call so a closed connection is transparently replaced.
        return AiQueueClient(self.connections.get_connection(self._env))

    async def ping(self) -> bool:
        return await self.client().ping()

    async def enqueue(self, kind: JobKind, payload: AiJobPayload, *, job_id: str) -> str:
        return await self.client().enqueue(kind, payload, job_id=job_id)

    async def publish_metrics(self, delta: MetricsSnapshot) -> None:
        await self.client().publish_metrics(delta)

    async def published_metrics(self) -> MetricsSnapshot:
        return await self.client().published_metrics()

    async def clear_published_metrics(self) -> None:
        await self.client().clear_published_metrics()

    def start_workers(self, processors: dict[JobKind, AiProcessor] | None = None) -> dict[JobKind, Worker]:
        if self._workers is not None:
            return self._workers
        if processors is None:
            from estatejobs.services.ai_jobs import get_ai_job_handlers

            processors = create_ai_processor_map(self._handlers or get_ai_job_handlers())
        workers = self._worker_factory(
            connection=self.connections.get_connection(self._env),
            concurrency=self.config.worker_concurrency,
            processors=processors,
            instrumentation=self.instrumentation,
            job_options=self.config.default_job_options,
        )
        self._workers = workers
        self._worker_tasks = {
            kind: asyncio.create_task(worker.async_run(), name=f"ai-worker:{kind.value}")
            for kind, worker in workers.items()
        }
        self._metrics_publisher = MetricsPublisher(self.metrics, self, interval_s=self._metrics_publish_interval_s)
        self._metrics_publisher.start()
        logger.info(
            "queue.workers.start count=%s concurrency=%s attempts=%s",
            len(workers),
            self.config.worker_concurrency,
            self.config.default_job_options.attempts,
        )
        return workers

    async def stop_workers(self) -> None:
        if self._workers is None:
            return
        workers, tasks = self._workers, self._worker_tasks
        self._workers = None
        self._worker_tasks = {}
        # Every worker stops polling at once; each then waits for its own running jobs.
        await asyncio.gather(*(stop_ai_worker(worker, tasks.get(kind)) for kind, worker in workers.items()))
        if self._instrumentation is not None:
            await self._instrumentation.drain()
        publisher = self._metrics_publisher
        self._metrics_publisher = None
        if publisher is not None:
            await publisher.stop()
        await self.connections.close()
        logger.info("queue.workers.stop count=%s", len(workers))

    def start_recovery_loop(self, env: EnvLike | None = None) -> VocalRecoveryLoop:
        if self._recovery_loop is not None:
            return self._recovery_loop
        config = resolve_vocal_recovery_config(env if env is not None else self._env)
        sweeper = VocalRecoverySweeper(
            vocals=self.vocals,
            review_queue=self.review_queue,
            client=self,
            clock=self._clock,
        )
        loop = VocalRecoveryLoop(sweeper, config)
        self._recovery_loop = loop
        loop.start()
        logger.info(
            "vocal.recovery.start interval_ms=%s stale_after_ms=%s max_attempts=%s batch_size=%s",
            config.interval_ms,
            config.stale_after_ms,
            config.max_attempts,
            config.batch_size,
        )
        return loop

    async def stop_recovery_loop(self) -> None:
        if self._recovery_loop is None:
            return
        loop = self._recovery_loop
        self._recovery_loop = None
        await loop.stop()

    async def close(self) -> None:
        await self.stop_recovery_loop()
        await self.stop_workers()
        await self.connections.close()


@lru_cache
def get_queue_runtime() -> QueueRuntime:
    # One runtime per process; the entry point and the API share this accessor.
    return QueueRuntime()


def get_metrics_snapshot() -> MetricsSnapshot:
    return get_queue_runtime().metrics.snapshot()


def reset_metrics() -> None:
    get_queue_runtime().metrics.reset()
