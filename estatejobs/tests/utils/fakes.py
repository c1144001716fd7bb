from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

from estatejobs.domain.jobs import ReviewItemStatus, VocalProcessingStep, VocalStatus
from estatejobs.services.queue.contracts import AbandonedVocals, VocalRecoveryCandidate


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class _FakePool:
    def __init__(self, *, fail: bool = False) -> None:
        self.disconnects = 0
        self.fail = fail

    async def disconnect(self, inuse_connections: bool = True) -> None:
        self.disconnects += 1
        if self.fail:
            raise RuntimeError("disconnect failed")


class _FakePipeline:
    def __init__(self, redis: FakeArqRedis) -> None:
        self._redis = redis
        self._increments: list[tuple[str, str, int]] = []

    async def __aenter__(self) -> _FakePipeline:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._increments = []

    def hincrby(self, key: str, field: str, amount: int) -> _FakePipeline:
        self._increments.append((key, field, amount))
        return self

    async def execute(self) -> list[int]:
        if self._redis.fail:
            raise ConnectionError("Connection refused")
        return [await self._redis.hincrby(key, field, amount) for key, field, amount in self._increments]


class FakeArqRedis:
    """Just enough of ArqRedis for enqueue, ping, depth and close paths."""

    def __init__(self, *, fail: bool = False, fail_close: bool = False, fail_disconnect: bool = False) -> None:
        self.fail = fail
        self.fail_close = fail_close
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.deleted: list[str] = []
        self.jobs: dict[str, dict[str, Any]] = {}
        self.enqueue_calls: list[str] = []
        self.closed = 0
        self.connection_pool = _FakePool(fail=fail_disconnect)

    async def ping(self) -> bool:
        if self.fail:
            raise ConnectionError("Connection refused")
        return True

    async def enqueue_job(self, function: str, *args: Any, _job_id: str, _queue_name: str, **_kwargs: Any):
        if self.fail:
            raise ConnectionError("Connection refused")
        self.enqueue_calls.append(_job_id)
        if _job_id in self.jobs:
            # arq returns None when a job with this id already exists.
            return None
        self.jobs[_job_id] = {"function": function, "queue": _queue_name, "args": args}
        return SimpleNamespace(job_id=_job_id)

    async def zcard(self, key: str) -> int:
        if self.fail:
            raise ConnectionError("Connection refused")
        return sum(1 for job in self.jobs.values() if job["queue"] == key)

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        if self.fail:
            raise ConnectionError("Connection refused")
        values = self.hashes.setdefault(key, {})
        current = int(values.get(field.encode(), b"0")) + amount
        values[field.encode()] = str(current).encode()
        return current

    async def hgetall(self, key: str) -> dict[bytes, bytes]:
        if self.fail:
            raise ConnectionError("Connection refused")
        return dict(self.hashes.get(key, {}))

    async def delete(self, *keys: str) -> int:
        if self.fail:
            raise ConnectionError("Connection refused")
        self.deleted.extend(keys)
        return sum(1 for key in keys if self.hashes.pop(key, None) is not None)

    async def aclose(self) -> None:
        self.closed += 1
        if self.fail_close:
            raise RuntimeError("close failed")

    def queued(self, queue_name: str) -> list[str]:
        return [job_id for job_id, job in self.jobs.items() if job["queue"] == queue_name]


@dataclass
class FakeVocal:
    id: str
    org_id: str
    status: VocalStatus
    updated_at: datetime
    processing_attempts: int = 0
    vocal_type: str | None = None
    processing_error: str | None = None
    processing_step: str | None = None


@dataclass
class FakeFailureMark:
    org_id: str
    id: str
    step: VocalProcessingStep
    message: str
    is_final: bool


class FakeVocalStore:
    """In-memory voice memos following the same filters as VocalsService."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.vocals: dict[str, FakeVocal] = {}
        self.failures: list[FakeFailureMark] = []
        self.fail_marking = False

    def add(self, vocal: FakeVocal) -> FakeVocal:
        self.vocals[vocal.id] = vocal
        return vocal

    async def mark_processing_failure(
        self,
        *,
        org_id: str,
        id: str,
        step: VocalProcessingStep,
        message: str,
        is_final: bool,
    ) -> None:
        if self.fail_marking:
            raise RuntimeError("database unavailable")
        self.failures.append(FakeFailureMark(org_id=org_id, id=id, step=step, message=message, is_final=is_final))
        vocal = self.vocals.get(id)
        if vocal is None or vocal.org_id != org_id:
            return
        vocal.processing_error = message
        vocal.processing_step = step.value
        vocal.updated_at = self._clock()
        if is_final:
            vocal.status = VocalStatus.REVIEW_REQUIRED

    async def register_recovery_attempt(self, *, org_id: str, id: str) -> None:
        vocal = self.vocals[id]
        vocal.processing_attempts += 1
        vocal.updated_at = self._clock()

    def _stale(self, status: VocalStatus, stale_before: datetime, *, missing_type: bool) -> list[FakeVocal]:
        rows = [
            vocal
            for vocal in self.vocals.values()
            if vocal.status == status
            and vocal.updated_at < stale_before
            and (not missing_type or vocal.vocal_type is None)
        ]
        return sorted(rows, key=lambda vocal: (vocal.updated_at, vocal.id))

    @staticmethod
    def _candidate(vocal: FakeVocal) -> VocalRecoveryCandidate:
        return VocalRecoveryCandidate(
            id=vocal.id,
            org_id=vocal.org_id,
            status=vocal.status,
            processing_attempts=vocal.processing_attempts,
            updated_at=vocal.updated_at,
        )

    async def list_abandoned_for_recovery(
        self, *, stale_before: datetime, max_attempts: int, limit: int
    ) -> AbandonedVocals:
        transcribe = [
            vocal
            for vocal in self._stale(VocalStatus.UPLOADED, stale_before, missing_type=False)
            if vocal.processing_attempts < max_attempts
        ][:limit]
        detect_type = [
            vocal
            for vocal in self._stale(VocalStatus.TRANSCRIBED, stale_before, missing_type=True)
            if vocal.processing_attempts < max_attempts
        ][:limit]
        return AbandonedVocals(
            transcribe=[self._candidate(vocal) for vocal in transcribe],
            detect_type=[self._candidate(vocal) for vocal in detect_type],
        )

    async def list_recovery_exhausted(
        self, *, stale_before: datetime, min_attempts: int, limit: int
    ) -> list[VocalRecoveryCandidate]:
        rows = [
            vocal
            for vocal in [
                *self._stale(VocalStatus.UPLOADED, stale_before, missing_type=False),
                *self._stale(VocalStatus.TRANSCRIBED, stale_before, missing_type=True),
            ]
            if vocal.processing_attempts >= min_attempts
        ]
        rows.sort(key=lambda vocal: (vocal.updated_at, vocal.id))
        return [self._candidate(vocal) for vocal in rows[:limit]]


@dataclass
class FakeReviewItem:
    org_id: str
    item_type: str
    item_id: str
    reason: str
    payload: dict[str, Any] | None
    status: str = ReviewItemStatus.OPEN.value


@dataclass
class FakeReviewQueue:
    items: list[FakeReviewItem] = field(default_factory=list)
    fail: bool = False

    async def create_open_item(
        self,
        *,
        org_id: str,
        item_type: str,
        item_id: str,
        reason: str,
        payload: dict[str, Any] | None = None,
    ) -> FakeReviewItem:
        if self.fail:
            raise RuntimeError("review queue unavailable")
        for item in self.items:
            if (item.org_id, item.item_type, item.item_id, item.reason, item.status) == (
                org_id,
                item_type,
                item_id,
                reason,
                ReviewItemStatus.OPEN.value,
            ):
                return item
        item = FakeReviewItem(org_id=org_id, item_type=item_type, item_id=item_id, reason=reason, payload=payload)
        self.items.append(item)
        return item


class RecordingHandlers:
    """AI job handlers that record calls and optionally fail for chosen entities."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self._failing = failing or set()

    async def _handle(self, name: str, org_id: str, entity_id: str) -> dict[str, str]:
        self.calls.append((name, org_id, entity_id))
        if entity_id in self._failing:
            raise RuntimeError(f"{name} failed for {entity_id}")
        return {"status": "ok"}

    async def process_message(self, org_id: str, entity_id: str) -> dict[str, str]:
        return await self._handle("process_message", org_id, entity_id)

    async def process_file(self, org_id: str, entity_id: str) -> dict[str, str]:
        return await self._handle("process_file", org_id, entity_id)

    async def transcribe_vocal(self, org_id: str, entity_id: str) -> dict[str, str]:
        return await self._handle("transcribe_vocal", org_id, entity_id)

    async def detect_vocal_type(self, org_id: str, entity_id: str) -> dict[str, str]:
        return await self._handle("detect_vocal_type", org_id, entity_id)

    async def extract_initial_visit_property_params(self, org_id: str, entity_id: str) -> dict[str, str]:
        return await self._handle("extract_initial_visit_property_params", org_id, entity_id)

    async def extract_vocal_insights(self, org_id: str, entity_id: str) -> dict[str, str]:
        return await self._handle("extract_vocal_insights", org_id, entity_id)


class FakeWorker:
    """Stands in for arq.Worker: runs until cancelled, exposes the attributes shutdown touches."""

    def __init__(self, *, queue_name: str, pool: Any = None, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.queue_name = queue_name
        self.pool = pool
        self.health_check_key = f"{queue_name}:health-check"
        self.tasks: dict[str, asyncio.Task[Any]] = {}
        self.allow_pick_jobs = True
        self.started = False

    async def async_run(self) -> None:
        self.started = True
        await asyncio.Event().wait()


class FakeWorkerFactory:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> dict[Any, FakeWorker]:
        self.calls.append(kwargs)
        return {
            kind: FakeWorker(queue_name=kind.spec.queue_name, pool=kwargs["connection"])
            for kind in kwargs["processors"]
        }
