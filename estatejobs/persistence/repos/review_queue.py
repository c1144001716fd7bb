from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from estatejobs.domain.jobs import ReviewItemStatus, utc_now
from estatejobs.domain.models import ReviewQueueItem


async def get_open_item(
    session: AsyncSession,
    *,
    org_id: str,
    item_type: str,
    item_id: str,
    reason: str,
) -> ReviewQueueItem | None:
    result = await session.execute(
        select(ReviewQueueItem).where(
            ReviewQueueItem.org_id == org_id,
            ReviewQueueItem.item_type == item_type,
            ReviewQueueItem.item_id == item_id,
            ReviewQueueItem.reason == reason,
            ReviewQueueItem.status == ReviewItemStatus.OPEN.value,
        )
    )
    return result.scalars().first()


async def create_item(
    session: AsyncSession,
    *,
    org_id: str,
    item_type: str,
    item_id: str,
    reason: str,
    payload: dict[str, Any] | None,
) -> ReviewQueueItem:
    now = utc_now()
    row = ReviewQueueItem(
        id=uuid4().hex,
        org_id=org_id,
        item_type=item_type,
        item_id=item_id,
        reason=reason,
        status=ReviewItemStatus.OPEN.value,
        payload_json=payload,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    return row
