from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict


class JobKind(str, Enum):
    PROCESS_MESSAGE = "process_message"
    PROCESS_FILE = "process_file"
    TRANSCRIBE_VOCAL = "transcribe_vocal"
    DETECT_VOCAL_TYPE = "detect_vocal_type"
    EXTRACT_INITIAL_VISIT_PROPERTY_PARAMS = "extract_initial_visit_property_params"
    EXTRACT_VOCAL_INSIGHTS = "extract_vocal_insights"

    @property
    def spec(self) -> "JobKindSpec":
        return JOB_KIND_SPECS[self]


class VocalStatus(str, Enum):
    UPLOADED = "UPLOADED"
    TRANSCRIBED = "TRANSCRIBED"
    INSIGHTS_READY = "INSIGHTS_READY"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"


class VocalProcessingStep(str, Enum):
    TRANSCRIBE = "TRANSCRIBE"
    DETECT_TYPE = "DETECT_TYPE"
    EXTRACT_PROPERTY = "EXTRACT_PROPERTY"
    EXTRACT_INSIGHTS = "EXTRACT_INSIGHTS"


class ReviewItemStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


# Review reason used by both the worker failure path and the recovery sweeper.
VOCAL_PROCESSING_ERROR = "VOCAL_PROCESSING_ERROR"
REVIEW_ITEM_TYPE_VOCAL = "VOCAL"


@dataclass(frozen=True, slots=True)
class JobKindSpec:
    queue_name: str
    job_name: str
    id_prefix: str
    fallback_prefix: str
    handler_name: str
    vocal_step: VocalProcessingStep | None = None


JOB_KIND_SPECS: dict[JobKind, JobKindSpec] = {
    JobKind.PROCESS_MESSAGE: JobKindSpec(
        queue_name="ai.process-message",
        job_name="process-message",
        id_prefix="msg",
        fallback_prefix="msg",
        handler_name="process_message",
    ),
    JobKind.PROCESS_FILE: JobKindSpec(
        queue_name="ai.process-file",
        job_name="process-file",
        id_prefix="file",
        fallback_prefix="file",
        handler_name="process_file",
    ),
    JobKind.TRANSCRIBE_VOCAL: JobKindSpec(
        queue_name="ai.transcribe-vocal",
        job_name="transcribe-vocal",
        id_prefix="vocal:transcribe",
        fallback_prefix="vocal_transcribe",
        handler_name="transcribe_vocal",
        vocal_step=VocalProcessingStep.TRANSCRIBE,
    ),
    JobKind.DETECT_VOCAL_TYPE: JobKindSpec(
        queue_name="ai.detect-vocal-type",
        job_name="detect-vocal-type",
        id_prefix="vocal:type",
        fallback_prefix="vocal_type",
        handler_name="detect_vocal_type",
        vocal_step=VocalProcessingStep.DETECT_TYPE,
    ),
    JobKind.EXTRACT_INITIAL_VISIT_PROPERTY_PARAMS: JobKindSpec(
        queue_name="ai.extract-initial-visit-property-params",
        job_name="extract-initial-visit-property-params",
        id_prefix="vocal:property",
        fallback_prefix="vocal_property_extract",
        handler_name="extract_initial_visit_property_params",
        vocal_step=VocalProcessingStep.EXTRACT_PROPERTY,
    ),
    JobKind.EXTRACT_VOCAL_INSIGHTS: JobKindSpec(
        queue_name="ai.extract-vocal-insights",
        job_name="extract-vocal-insights",
        id_prefix="vocal:insights",
        fallback_prefix="vocal_insights",
        handler_name="extract_vocal_insights",
        vocal_step=VocalProcessingStep.EXTRACT_INSIGHTS,
    ),
}


class AiJobPayload(BaseModel):
    # One job processes exactly one entity within one organisation.
    model_config = ConfigDict(frozen=True)

    org_id: str
    entity_id: str


class AiJob(BaseModel):
    """A single delivery attempt of a job, as seen by a worker."""

    kind: JobKind
    payload: AiJobPayload
    job_id: str
    attempts_made: int = 1
    attempts_allowed: int = 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.attempts_allowed


class AiWorkerResult(BaseModel):
    queue: JobKind
    job_id: str | None
    processed_at: str


def utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def build_job_id(kind: JobKind, payload: AiJobPayload) -> str:
    # Deterministic id so the broker dedups a second dispatch of the same entity.
    return f"{kind.spec.id_prefix}:{payload.org_id}:{payload.entity_id}"


def build_recovery_job_id(kind: JobKind, payload: AiJobPayload, *, attempt: int, timestamp_ms: int) -> str:
    # Salted with attempt and time so a recovered job never collides with a discarded one.
    return f"{kind.spec.id_prefix}:recovery:{payload.org_id}:{payload.entity_id}:{attempt}:{timestamp_ms}"


def fallback_job_id(kind: JobKind) -> str:
    return f"{kind.spec.fallback_prefix}_{uuid4()}"
