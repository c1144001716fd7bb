from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from estatejobs.domain.models import ReviewQueueItem
from estatejobs.persistence.repos import review_queue as review_queue_repo


logger = logging.getLogger(__name__)


class ReviewQueueService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from estatejobs.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    async def create_open_item(
        self,
        *,
        org_id: str,
        item_type: str,
        item_id: str,
        reason: str,
        payload: dict[str, Any] | None = None,
    ) -> ReviewQueueItem:
        # Reuse an open item for the same entity and reason so operators triage it once.
        async with self._session_factory() as session:
            existing = await review_queue_repo.get_open_item(
                session,
                org_id=org_id,
                item_type=item_type,
                item_id=item_id,
                reason=reason,
            )
            if existing is not None:
                return existing
            row = await review_queue_repo.create_item(
                session,
                org_id=org_id,
                item_type=item_type,
                item_id=item_id,
                reason=reason,
                payload=payload,
            )
            await session.commit()
        logger.info("review_queue.open org=%s type=%s item=%s reason=%s", org_id, item_type, item_id, reason)
        return row
