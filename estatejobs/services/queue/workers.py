from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from arq import Retry
from arq.worker import Worker, func

from estatejobs.core.errors import JobTimeoutError
from estatejobs.domain.jobs import (
    REVIEW_ITEM_TYPE_VOCAL,
    VOCAL_PROCESSING_ERROR,
    AiJob,
    AiJobPayload,
    AiWorkerResult,
    JobKind,
    VocalProcessingStep,
)
from estatejobs.services.queue.config import JobOptions
from estatejobs.services.queue.contracts import ReviewQueueWriter, VocalProcessingStore
from estatejobs.services.queue.metrics import QueueMetrics
from estatejobs.services.queue.processors import AiProcessor


logger = logging.getLogger(__name__)

ArqJobFunction = Callable[[dict[str, Any], dict[str, Any]], Awaitable[dict[str, Any]]]

# Bound review payloads; provider errors can embed whole responses.
REVIEW_ERROR_MAX_CHARS = 1000

DEFAULT_POLL_DELAY_S = 0.5
# Slack between our per-attempt timeout and arq's, which cancels without recording.
ARQ_TIMEOUT_GRACE_S = 30.0


def error_message(exc: BaseException) -> str:
    # Prefer the exception text; fall back to a generic label for empty messages.
    message = str(exc).strip()
    return message or "Erreur inconnue"


class WorkerInstrumentation:
    """Records job lifecycle events and persists voice-memo failures.

    Failure persistence runs in background tasks so the worker can hand the job
    back to arq immediately. The tasks are tracked and ``drain()`` waits for them,
    which lets shutdown finish pending writes before the connection closes.
    """

    def __init__(
        self,
        metrics: QueueMetrics,
        vocals: VocalProcessingStore | None = None,
        review_queue: ReviewQueueWriter | None = None,
    ) -> None:
        self.metrics = metrics
        self._vocals = vocals
        self._review_queue = review_queue
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def on_started(self, job: AiJob) -> None:
        self.metrics.record_started(job.kind)
        logger.info(
            "queue.job.start queue=%s id=%s attempt=%s/%s",
            job.kind.spec.queue_name,
            job.job_id,
            job.attempts_made,
            job.attempts_allowed,
        )

    def on_completed(self, job: AiJob) -> None:
        self.metrics.record_completed(job.kind)
        logger.info("queue.job.done queue=%s id=%s", job.kind.spec.queue_name, job.job_id)

    def on_cancelled(self, job: AiJob) -> None:
        # arq re-runs cancelled jobs; count the lost attempt without touching the memo.
        self.metrics.record_failed(job.kind)
        logger.warning("queue.job.cancelled queue=%s id=%s", job.kind.spec.queue_name, job.job_id)

    def on_failed(self, job: AiJob, exc: BaseException) -> asyncio.Task[None] | None:
        self.metrics.record_failed(job.kind)
        logger.error(
            "queue.job.fail queue=%s id=%s attempt=%s/%s error=%s",
            job.kind.spec.queue_name,
            job.job_id,
            job.attempts_made,
            job.attempts_allowed,
            error_message(exc),
        )
        step = job.kind.spec.vocal_step
        if step is None or self._vocals is None:
            return None
        task = asyncio.create_task(self._persist_failure(self._vocals, job, step, error_message(exc)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _persist_failure(
        self,
        vocals: VocalProcessingStore,
        job: AiJob,
        step: VocalProcessingStep,
        message: str,
    ) -> None:
        # Never raise: a failure while recording a failure must not take the worker down.
        is_final = job.is_final_attempt
        try:
            await vocals.mark_processing_failure(
                org_id=job.payload.org_id,
                id=job.payload.entity_id,
                step=step,
                message=message,
                is_final=is_final,
            )
            if is_final and self._review_queue is not None:
                await self._review_queue.create_open_item(
                    org_id=job.payload.org_id,
                    item_type=REVIEW_ITEM_TYPE_VOCAL,
                    item_id=job.payload.entity_id,
                    reason=VOCAL_PROCESSING_ERROR,
                    payload={
                        "step": step.value,
                        "queue": job.kind.spec.queue_name,
                        "attempts_made": job.attempts_made,
                        "attempts_allowed": job.attempts_allowed,
                        "error": message[:REVIEW_ERROR_MAX_CHARS],
                    },
                )
        except Exception:  # noqa: BLE001 - failure bookkeeping is best effort
            logger.exception(
                "queue.job.fail_persist_error queue=%s id=%s entity=%s",
                job.kind.spec.queue_name,
                job.job_id,
                job.payload.entity_id,
            )

    async def drain(self) -> None:
        # Loop because a drained task may have been replaced by a newer failure.
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def instrument_processor(
    kind: JobKind,
    processor: AiProcessor,
    instrumentation: WorkerInstrumentation,
    job_options: JobOptions,
) -> ArqJobFunction:
    """Wrap a processor into the ``(ctx, payload)`` coroutine arq executes.

    The per-attempt timeout is enforced here rather than by arq, so a job that
    runs too long fails like any other attempt: it is counted, persisted for
    voice memos and retried with backoff until attempts run out.
    """

    async def run_job(ctx: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        job = AiJob(
            kind=kind,
            payload=AiJobPayload.model_validate(payload),
            job_id=str(ctx.get("job_id") or ""),
            attempts_made=int(ctx.get("job_try") or 1),
            attempts_allowed=job_options.attempts,
        )
        instrumentation.on_started(job)
        deadline = asyncio.timeout(job_options.timeout_s)
        try:
            async with deadline:
                result: AiWorkerResult = await processor(job)
        except asyncio.CancelledError:
            instrumentation.on_cancelled(job)
            raise
        except Exception as exc:  # noqa: BLE001 - every failed attempt is recorded before arq sees it
            failure: Exception = exc
            if deadline.expired():
                failure = JobTimeoutError(f"job exceeded {job_options.timeout_s:g}s")
            instrumentation.on_failed(job, failure)
            if job.is_final_attempt:
                if failure is exc:
                    raise
                raise failure from exc
            # arq only reschedules on Retry; apply the exponential backoff ourselves.
            raise Retry(defer=job_options.backoff_delay_s(job.attempts_made)) from failure
        instrumentation.on_completed(job)
        return result.model_dump(mode="json")

    run_job.__name__ = f"run_{kind.value}"
    return run_job


def create_ai_workers(
    *,
    connection,  # noqa: ANN001 - ArqRedis shared by every worker
    concurrency: int,
    processors: dict[JobKind, AiProcessor],
    instrumentation: WorkerInstrumentation,
    job_options: JobOptions,
    poll_delay_s: float = DEFAULT_POLL_DELAY_S,
) -> dict[JobKind, Worker]:
    # One arq worker per kind, all reading their own queue through the shared connection.
    # arq's own timeout sits past ours so it never cancels a job before run_job records it.
    arq_timeout_s = job_options.timeout_s + ARQ_TIMEOUT_GRACE_S
    workers: dict[JobKind, Worker] = {}
    for kind in JobKind:
        spec = kind.spec
        job_function = func(
            instrument_processor(kind, processors[kind], instrumentation, job_options),
            name=spec.job_name,
            max_tries=job_options.attempts,
            keep_result=job_options.keep_result_s,
            timeout=arq_timeout_s,
        )
        workers[kind] = Worker(
            functions=[job_function],
            queue_name=spec.queue_name,
            redis_pool=connection,
            max_jobs=concurrency,
            max_tries=job_options.attempts,
            keep_result=job_options.keep_result_s,
            job_timeout=arq_timeout_s,
            poll_delay=poll_delay_s,
            # The entry point owns SIGINT/SIGTERM and stops every worker together.
            handle_signals=False,
        )
    return workers


async def _wait_for_running_jobs(worker: Worker) -> None:
    while True:
        running = [task for task in worker.tasks.values() if not task.done()]
        if not running:
            return
        await asyncio.gather(*running, return_exceptions=True)


async def stop_ai_worker(worker: Worker, run_task: asyncio.Task[None] | None = None) -> None:
    """Stop polling and wait for the jobs this worker already picked up.

    ``Worker.close()`` is not used: without arq-managed signals it cancels
    running jobs, and it closes the pool every worker shares.
    """
    worker.allow_pick_jobs = False
    await _wait_for_running_jobs(worker)
    if run_task is not None:
        run_task.cancel()
        await asyncio.gather(run_task, return_exceptions=True)
    # A poll iteration interrupted mid-start may still have handed off a job.
    await _wait_for_running_jobs(worker)
    try:
        await worker.pool.delete(worker.health_check_key)
    except Exception:  # noqa: BLE001 - the key expires on its own
        logger.warning("queue.worker.health_key_cleanup_failed queue=%s", worker.queue_name, exc_info=True)
