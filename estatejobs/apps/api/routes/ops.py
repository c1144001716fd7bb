from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from estatejobs.apps.api.deps import get_runtime
from estatejobs.core.config import get_settings
from estatejobs.core.errors import QueueUnavailableError
from estatejobs.domain.jobs import JobKind, utc_now
from estatejobs.services.queue.metrics import MetricsSnapshot
from estatejobs.services.queue.runtime import QueueRuntime


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ops", tags=["ops"])


class QueueMetricsResponse(BaseModel):
    # Totals across every worker process, as published to Redis; null when Redis is unreachable.
    queue_enabled: bool
    queues: dict[str, dict[str, int]] | None
    queue_depth: dict[str, int | None]
    timestamp: datetime


async def _get_queue_counters(runtime: QueueRuntime) -> MetricsSnapshot | None:
    if not get_settings().enable_queue:
        # No broker means no workers; only this process's counters exist.
        return runtime.metrics.snapshot()
    try:
        return await runtime.published_metrics()
    except QueueUnavailableError:
        logger.warning("ops.queue_metrics.unavailable", exc_info=True)
        return None


async def _get_queue_depths(runtime: QueueRuntime) -> dict[str, int | None]:
    # Degrade to None per queue when Redis is unavailable or dispatch is disabled.
    depths: dict[str, int | None] = {kind.value: None for kind in JobKind}
    if not get_settings().enable_queue:
        return depths
    try:
        client = runtime.client()
        for kind in JobKind:
            depths[kind.value] = await client.queue_depth(kind)
    except QueueUnavailableError:
        return {kind.value: None for kind in JobKind}
    return depths


@router.get("/queues/metrics", response_model=QueueMetricsResponse)
async def queue_metrics(runtime: QueueRuntime = Depends(get_runtime)) -> QueueMetricsResponse:
    return QueueMetricsResponse(
        queue_enabled=get_settings().enable_queue,
        queues=await _get_queue_counters(runtime),
        queue_depth=await _get_queue_depths(runtime),
        timestamp=utc_now(),
    )


@router.post("/queues/metrics/reset", response_model=QueueMetricsResponse)
async def reset_queue_metrics(runtime: QueueRuntime = Depends(get_runtime)) -> QueueMetricsResponse:
    # Operators reset counters between load tests; there is no other reset path.
    runtime.metrics.reset()
    if get_settings().enable_queue:
        try:
            await runtime.clear_published_metrics()
        except QueueUnavailableError as exc:
            raise HTTPException(
                status_code=503,
                detail={"code": "QUEUE_UNAVAILABLE", "message": "Queue metrics could not be reset"},
            ) from exc
    return QueueMetricsResponse(
        queue_enabled=get_settings().enable_queue,
        queues=await _get_queue_counters(runtime),
        queue_depth={kind.value: None for kind in JobKind},
        timestamp=utc_now(),
    )
