from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from estatejobs.core.errors import EntityNotFoundError
from estatejobs.domain.jobs import VocalProcessingStep, VocalStatus
from estatejobs.domain.models import Vocal
from estatejobs.persistence.repos import vocals as vocals_repo
from estatejobs.services.queue.contracts import AbandonedVocals, VocalRecoveryCandidate


def _to_candidate(row: Vocal) -> VocalRecoveryCandidate:
    return VocalRecoveryCandidate(
        id=row.id,
        org_id=row.org_id,
        status=VocalStatus(row.status),
        processing_attempts=int(row.processing_attempts or 0),
        updated_at=row.updated_at,
    )


class VocalsService:
    """Voice-memo processing state backed by the relational store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from estatejobs.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    async def get_for_processing(self, *, org_id: str, id: str) -> Vocal:
        async with self._session_factory() as session:
            vocal = await vocals_repo.get_vocal(session, org_id, id)
        if vocal is None:
            raise EntityNotFoundError(f"vocal {id} not found for org {org_id}")
        return vocal

    async def set_status(
        self,
        *,
        org_id: str,
        id: str,
        status: VocalStatus,
        vocal_type: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await vocals_repo.set_status(session, org_id, id, status=status.value, vocal_type=vocal_type)
            await session.commit()

    async def mark_processing_failure(
        self,
        *,
        org_id: str,
        id: str,
        step: VocalProcessingStep,
        message: str,
        is_final: bool,
    ) -> None:
        async with self._session_factory() as session:
            await vocals_repo.mark_processing_failure(
                session,
                org_id,
                id,
                step=step.value,
                message=message,
                is_final=is_final,
            )
            await session.commit()

    async def register_recovery_attempt(self, *, org_id: str, id: str) -> None:
        async with self._session_factory() as session:
            await vocals_repo.register_recovery_attempt(session, org_id, id)
            await session.commit()

    async def list_abandoned_for_recovery(
        self, *, stale_before: datetime, max_attempts: int, limit: int
    ) -> AbandonedVocals:
        # Uploaded memos wait on transcription; transcribed memos without a type wait on detection.
        async with self._session_factory() as session:
            transcribe = await vocals_repo.list_stale_by_status(
                session,
                status=VocalStatus.UPLOADED.value,
                stale_before=stale_before,
                max_attempts=max_attempts,
                limit=limit,
            )
            detect_type = await vocals_repo.list_stale_by_status(
                session,
                status=VocalStatus.TRANSCRIBED.value,
                stale_before=stale_before,
                max_attempts=max_attempts,
                require_missing_type=True,
                limit=limit,
            )
        return AbandonedVocals(
            transcribe=[_to_candidate(row) for row in transcribe],
            detect_type=[_to_candidate(row) for row in detect_type],
        )

    async def list_recovery_exhausted(
        self, *, stale_before: datetime, min_attempts: int, limit: int
    ) -> list[VocalRecoveryCandidate]:
        async with self._session_factory() as session:
            uploaded = await vocals_repo.list_stale_by_status(
                session,
                status=VocalStatus.UPLOADED.value,
                stale_before=stale_before,
                min_attempts=min_attempts,
                limit=limit,
            )
            transcribed = await vocals_repo.list_stale_by_status(
                session,
                status=VocalStatus.TRANSCRIBED.value,
                stale_before=stale_before,
                min_attempts=min_attempts,
                require_missing_type=True,
                limit=limit,
            )
        rows = sorted([*uploaded, *transcribed], key=lambda row: (row.updated_at, row.id))[:limit]
        return [_to_candidate(row) for row in rows]
