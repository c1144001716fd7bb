from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from estatejobs.domain.jobs import VocalStatus, utc_now
from estatejobs.domain.models import Vocal


async def get_vocal(session: AsyncSession, org_id: str, vocal_id: str) -> Vocal | None:
    # Return None for org mismatch so callers treat it like a missing row.
    result = await session.execute(select(Vocal).where(Vocal.id == vocal_id, Vocal.org_id == org_id))
    return result.scalar_one_or_none()


async def set_status(
    session: AsyncSession,
    org_id: str,
    vocal_id: str,
    *,
    status: str,
    vocal_type: str | None = None,
) -> None:
    values: dict[str, object] = {"status": status, "updated_at": utc_now(), "processing_error": None}
    if vocal_type is not None:
        values["vocal_type"] = vocal_type
    await session.execute(
        update(Vocal).where(Vocal.id == vocal_id, Vocal.org_id == org_id).values(**values)
    )


async def mark_processing_failure(
    session: AsyncSession,
    org_id: str,
    vocal_id: str,
    *,
    step: str,
    message: str,
    is_final: bool,
) -> None:
    # Record the latest failure; only a terminal failure moves the memo to review.
    values: dict[str, object] = {
        "processing_error": message,
        "processing_step": step,
        "updated_at": utc_now(),
    }
    if is_final:
        values["status"] = VocalStatus.REVIEW_REQUIRED.value
    await session.execute(
        update(Vocal).where(Vocal.id == vocal_id, Vocal.org_id == org_id).values(**values)
    )


async def register_recovery_attempt(session: AsyncSession, org_id: str, vocal_id: str) -> None:
    # Increment in SQL to stay correct when several sweepers race on the same row.
    await session.execute(
        update(Vocal)
        .where(Vocal.id == vocal_id, Vocal.org_id == org_id)
        .values(processing_attempts=Vocal.processing_attempts + 1, updated_at=utc_now())
    )


async def list_stale_by_status(
    session: AsyncSession,
    *,
    status: str,
    stale_before: datetime,
    max_attempts: int | None = None,
    min_attempts: int | None = None,
    require_missing_type: bool = False,
    limit: int,
) -> list[Vocal]:
    stmt = select(Vocal).where(Vocal.status == status, Vocal.updated_at < stale_before)
    if max_attempts is not None:
        stmt = stmt.where(Vocal.processing_attempts < max_attempts)
    if min_attempts is not None:
        stmt = stmt.where(Vocal.processing_attempts >= min_attempts)
    if require_missing_type:
        stmt = stmt.where(Vocal.vocal_type.is_(None))
    result = await session.execute(stmt.order_by(Vocal.updated_at, Vocal.id).limit(max(1, limit)))
    return list(result.scalars().all())
