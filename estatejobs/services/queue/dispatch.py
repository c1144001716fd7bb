from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel

from estatejobs.core.config import get_settings
from estatejobs.domain.jobs import AiJobPayload, JobKind, build_job_id, fallback_job_id

if TYPE_CHECKING:
    from estatejobs.services.queue.runtime import QueueRuntime


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Enqueued:
    job_id: str


@dataclass(frozen=True)
class Fallback:
    job_id: str
    reason: Literal["disabled", "unavailable"]


DispatchOutcome = Enqueued | Fallback


class QueueResult(BaseModel):
    # Callers see the same shape whether the broker accepted the job or not.
    job_id: str
    status: Literal["QUEUED"] = "QUEUED"


def _resolve_runtime(runtime: "QueueRuntime | None") -> "QueueRuntime":
    if runtime is not None:
        return runtime
    from estatejobs.services.queue.runtime import get_queue_runtime

    return get_queue_runtime()


async def dispatch(
    kind: JobKind,
    payload: AiJobPayload,
    *,
    runtime: "QueueRuntime | None" = None,
) -> DispatchOutcome:
    """Enqueue one job for ``kind`` or degrade to a locally generated fallback id.

    Disabled dispatch never contacts the broker. Any failure while reaching the
    broker is logged and turned into a ``Fallback`` so request handlers are never
    interrupted by queue outages.
    """
    if not get_settings().enable_queue:
        return Fallback(job_id=fallback_job_id(kind), reason="disabled")
    try:
        job_id = await _resolve_runtime(runtime).enqueue(kind, payload, job_id=build_job_id(kind, payload))
    except Exception as exc:  # noqa: BLE001 - dispatch degrades instead of failing the request
        fallback = Fallback(job_id=fallback_job_id(kind), reason="unavailable")
        logger.warning(
            "queue.enqueue.fallback kind=%s org=%s entity=%s id=%s error=%s",
            kind.value,
            payload.org_id,
            payload.entity_id,
            fallback.job_id,
            exc,
        )
        return fallback
    return Enqueued(job_id=job_id)


async def _enqueue(kind: JobKind, payload: AiJobPayload, runtime: "QueueRuntime | None") -> QueueResult:
    outcome = await dispatch(kind, payload, runtime=runtime)
    return QueueResult(job_id=outcome.job_id)


async def enqueue_message_ai_job(
    payload: AiJobPayload, *, runtime: "QueueRuntime | None" = None
) -> QueueResult:
    return await _enqueue(JobKind.PROCESS_MESSAGE, payload, runtime)


async def enqueue_file_ai_job(payload: AiJobPayload, *, runtime: "QueueRuntime | None" = None) -> QueueResult:
    return await _enqueue(JobKind.PROCESS_FILE, payload, runtime)


async def enqueue_vocal_transcription_job(
    payload: AiJobPayload, *, runtime: "QueueRuntime | None" = None
) -> QueueResult:
    return await _enqueue(JobKind.TRANSCRIBE_VOCAL, payload, runtime)


async def enqueue_vocal_type_detection_job(
    payload: AiJobPayload, *, runtime: "QueueRuntime | None" = None
) -> QueueResult:
    return await _enqueue(JobKind.DETECT_VOCAL_TYPE, payload, runtime)


async def enqueue_initial_visit_property_extraction_job(
    payload: AiJobPayload, *, runtime: "QueueRuntime | None" = None
) -> QueueResult:
    return await _enqueue(JobKind.EXTRACT_INITIAL_VISIT_PROPERTY_PARAMS, payload, runtime)


async def enqueue_vocal_insights_job(
    payload: AiJobPayload, *, runtime: "QueueRuntime | None" = None
) -> QueueResult:
    return await _enqueue(JobKind.EXTRACT_VOCAL_INSIGHTS, payload, runtime)
