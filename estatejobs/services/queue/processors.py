from __future__ import annotations

from typing import Awaitable, Callable

from estatejobs.domain.jobs import AiJob, AiWorkerResult, JobKind, utc_now
from estatejobs.services.queue.contracts import AiJobHandlers


AiProcessor = Callable[[AiJob], Awaitable[AiWorkerResult]]


def _build_processor(kind: JobKind, handlers: AiJobHandlers) -> AiProcessor:
    handler = getattr(handlers, kind.spec.handler_name)

    async def process(job: AiJob) -> AiWorkerResult:
        # Exceptions propagate; the worker decides between retry and failure.
        await handler(job.payload.org_id, job.payload.entity_id)
        return AiWorkerResult(queue=kind, job_id=job.job_id, processed_at=utc_now().isoformat())

    process.__name__ = f"process_{kind.value}"
    return process


def create_ai_processor_map(handlers: AiJobHandlers) -> dict[JobKind, AiProcessor]:
    # Every kind gets a processor; a missing handler method fails here, at wiring time.
    return {kind: _build_processor(kind, handlers) for kind in JobKind}
