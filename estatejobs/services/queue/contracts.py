from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from estatejobs.domain.jobs import VocalProcessingStep, VocalStatus


@dataclass(frozen=True, slots=True)
class VocalRecoveryCandidate:
    id: str
    org_id: str
    status: VocalStatus
    processing_attempts: int
    updated_at: datetime


@dataclass(slots=True)
class AbandonedVocals:
    transcribe: list[VocalRecoveryCandidate] = field(default_factory=list)
    detect_type: list[VocalRecoveryCandidate] = field(default_factory=list)


class AiJobHandlers(Protocol):
    async def process_message(self, org_id: str, entity_id: str) -> Any: ...

    async def process_file(self, org_id: str, entity_id: str) -> Any: ...

    async def transcribe_vocal(self, org_id: str, entity_id: str) -> Any: ...

    async def detect_vocal_type(self, org_id: str, entity_id: str) -> Any: ...

    async def extract_initial_visit_property_params(self, org_id: str, entity_id: str) -> Any: ...

    async def extract_vocal_insights(self, org_id: str, entity_id: str) -> Any: ...


class VocalProcessingStore(Protocol):
    async def mark_processing_failure(
        self,
        *,
        org_id: str,
        id: str,
        step: VocalProcessingStep,
        message: str,
        is_final: bool,
    ) -> None: ...

    async def register_recovery_attempt(self, *, org_id: str, id: str) -> None: ...

    async def list_abandoned_for_recovery(
        self, *, stale_before: datetime, max_attempts: int, limit: int
    ) -> AbandonedVocals: ...

    async def list_recovery_exhausted(
        self, *, stale_before: datetime, min_attempts: int, limit: int
    ) -> list[VocalRecoveryCandidate]: ...


class ReviewQueueWriter(Protocol):
    async def create_open_item(
        self,
        *,
        org_id: str,
        item_type: str,
        item_id: str,
        reason: str,
        payload: dict[str, Any] | None = None,
    ) -> Any: ...
