from __future__ import annotations

import logging
from typing import Any

from estatejobs.core.config import get_settings
from estatejobs.core.errors import ProviderConfigError
from estatejobs.domain.jobs import AiJobPayload, VocalStatus
from estatejobs.services.queue.contracts import AiJobHandlers
from estatejobs.services.queue.dispatch import enqueue_vocal_type_detection_job
from estatejobs.services.vocals import VocalsService


logger = logging.getLogger(__name__)

# Type assigned by the fake classifier; real providers return one of the product types.
FAKE_VOCAL_TYPE = "VISITE_INITIALE"


class FakeAiJobHandlers:
    """Deterministic handlers that advance voice memos without calling a provider."""

    def __init__(self, vocals: VocalsService | None = None) -> None:
        self._vocals = vocals

    @property
    def vocals(self) -> VocalsService:
        if self._vocals is None:
            self._vocals = VocalsService()
        return self._vocals

    async def process_message(self, org_id: str, entity_id: str) -> dict[str, Any]:
        logger.debug("ai_jobs.fake.process_message org=%s message=%s", org_id, entity_id)
        return {"status": "PROCESSED"}

    async def process_file(self, org_id: str, entity_id: str) -> dict[str, Any]:
        logger.debug("ai_jobs.fake.process_file org=%s file=%s", org_id, entity_id)
        return {"status": "CLASSIFIED"}

    async def transcribe_vocal(self, org_id: str, entity_id: str) -> dict[str, Any]:
        vocal = await self.vocals.get_for_processing(org_id=org_id, id=entity_id)
        if vocal.status != VocalStatus.UPLOADED.value:
            # Re-delivered or recovered job; the transcript is already there.
            return {"status": vocal.status}
        await self.vocals.set_status(org_id=org_id, id=entity_id, status=VocalStatus.TRANSCRIBED)
        # Chain type detection the way a real provider run does; dispatch never raises.
        await enqueue_vocal_type_detection_job(AiJobPayload(org_id=org_id, entity_id=entity_id))
        return {"status": VocalStatus.TRANSCRIBED.value}

    async def detect_vocal_type(self, org_id: str, entity_id: str) -> dict[str, Any]:
        vocal = await self.vocals.get_for_processing(org_id=org_id, id=entity_id)
        if vocal.vocal_type:
            return {"status": vocal.status, "vocal_type": vocal.vocal_type}
        await self.vocals.set_status(
            org_id=org_id,
            id=entity_id,
            status=VocalStatus(vocal.status),
            vocal_type=FAKE_VOCAL_TYPE,
        )
        return {"status": vocal.status, "vocal_type": FAKE_VOCAL_TYPE}

    async def extract_initial_visit_property_params(self, org_id: str, entity_id: str) -> dict[str, Any]:
        await self.vocals.get_for_processing(org_id=org_id, id=entity_id)
        return {"status": "EXTRACTED"}

    async def extract_vocal_insights(self, org_id: str, entity_id: str) -> dict[str, Any]:
        await self.vocals.get_for_processing(org_id=org_id, id=entity_id)
        await self.vocals.set_status(org_id=org_id, id=entity_id, status=VocalStatus.INSIGHTS_READY)
        return {"status": VocalStatus.INSIGHTS_READY.value}


def get_ai_job_handlers() -> AiJobHandlers:
    settings = get_settings()
    provider = (settings.ai_jobs_provider or "").lower()

    if provider == "fake":
        return FakeAiJobHandlers()
    raise ProviderConfigError(f"Unsupported AI jobs provider: {settings.ai_jobs_provider!r}")
