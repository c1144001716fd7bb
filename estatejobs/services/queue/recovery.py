from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from estatejobs.domain.jobs import (
    REVIEW_ITEM_TYPE_VOCAL,
    VOCAL_PROCESSING_ERROR,
    AiJobPayload,
    JobKind,
    VocalProcessingStep,
    VocalStatus,
    build_recovery_job_id,
    utc_now,
)
from estatejobs.services.queue.client import JobWriter
from estatejobs.services.queue.config import EnvLike, parse_positive_integer
from estatejobs.services.queue.contracts import (
    ReviewQueueWriter,
    VocalProcessingStore,
    VocalRecoveryCandidate,
)
from estatejobs.services.queue.workers import error_message


logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_MS = 5 * 60 * 1000
DEFAULT_INTERVAL_MS = 60 * 1000
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BATCH_SIZE = 100

# Review payloads from the sweeper keep a shorter excerpt than worker failures.
RECOVERY_ERROR_MAX_CHARS = 500

Clock = Callable[[], datetime]

# Kinds the sweeper re-enqueues, with the step recorded when re-enqueueing fails.
RECOVERY_STEPS: dict[JobKind, VocalProcessingStep] = {
    JobKind.TRANSCRIBE_VOCAL: VocalProcessingStep.TRANSCRIBE,
    JobKind.DETECT_VOCAL_TYPE: VocalProcessingStep.DETECT_TYPE,
}


@dataclass(frozen=True)
class VocalRecoveryConfig:
    stale_after_ms: int = DEFAULT_STALE_AFTER_MS
    interval_ms: int = DEFAULT_INTERVAL_MS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    batch_size: int = DEFAULT_BATCH_SIZE


def resolve_vocal_recovery_config(env: EnvLike | None = None) -> VocalRecoveryConfig:
    env = os.environ if env is None else env
    return VocalRecoveryConfig(
        stale_after_ms=parse_positive_integer(env.get("VOCAL_RECOVERY_STALE_AFTER_MS"), DEFAULT_STALE_AFTER_MS),
        interval_ms=parse_positive_integer(env.get("VOCAL_RECOVERY_INTERVAL_MS"), DEFAULT_INTERVAL_MS),
        max_attempts=parse_positive_integer(env.get("VOCAL_RECOVERY_MAX_ATTEMPTS"), DEFAULT_MAX_ATTEMPTS),
        batch_size=parse_positive_integer(env.get("VOCAL_RECOVERY_BATCH_SIZE"), DEFAULT_BATCH_SIZE),
    )


@dataclass
class VocalRecoverySummary:
    requeued_transcriptions: int = 0
    requeued_type_detections: int = 0
    finalized: int = 0

    @property
    def has_activity(self) -> bool:
        return bool(self.requeued_transcriptions or self.requeued_type_detections or self.finalized)


def step_for_status(status: VocalStatus) -> VocalProcessingStep:
    # Uploaded memos never got a transcript; anything later stalled on type detection.
    if status == VocalStatus.UPLOADED:
        return VocalProcessingStep.TRANSCRIBE
    return VocalProcessingStep.DETECT_TYPE


class VocalRecoverySweeper:
    """Re-enqueues voice memos whose processing stalled, and finalizes the hopeless ones.

    A pass reads domain state rather than broker state: a memo counts as stalled
    when its status still waits on a step and it has not been touched for
    ``stale_after_ms``. The attempt ledger lives on the memo itself and is bumped
    before each re-enqueue, so a broker failure still consumes an attempt.
    """

    def __init__(
        self,
        *,
        vocals: VocalProcessingStore,
        review_queue: ReviewQueueWriter,
        client: JobWriter,
        clock: Clock = utc_now,
    ) -> None:
        self._vocals = vocals
        self._review_queue = review_queue
        self._client = client
        self._clock = clock

    async def run_pass(self, config: VocalRecoveryConfig) -> VocalRecoverySummary:
        # Fail fast when the broker is down; nothing could be re-enqueued anyway.
        await self._client.ping()
        summary = VocalRecoverySummary()
        stale_before = self._clock() - timedelta(milliseconds=config.stale_after_ms)

        recoverable = await self._vocals.list_abandoned_for_recovery(
            stale_before=stale_before,
            max_attempts=config.max_attempts,
            limit=config.batch_size,
        )
        for vocal in recoverable.transcribe:
            if await self._requeue(vocal, JobKind.TRANSCRIBE_VOCAL, config, summary):
                summary.requeued_transcriptions += 1
        for vocal in recoverable.detect_type:
            if await self._requeue(vocal, JobKind.DETECT_VOCAL_TYPE, config, summary):
                summary.requeued_type_detections += 1

        exhausted = await self._vocals.list_recovery_exhausted(
            stale_before=stale_before,
            min_attempts=config.max_attempts,
            limit=config.batch_size * 2,
        )
        for vocal in exhausted:
            await self._finalize(
                vocal,
                step_for_status(vocal.status),
                f"Vocal abandonné: aucune progression détectée après {config.max_attempts} tentatives",
            )
            summary.finalized += 1
        return summary

    async def _requeue(
        self,
        vocal: VocalRecoveryCandidate,
        kind: JobKind,
        config: VocalRecoveryConfig,
        summary: VocalRecoverySummary,
    ) -> bool:
        step = RECOVERY_STEPS[kind]
        attempt = vocal.processing_attempts + 1
        await self._vocals.register_recovery_attempt(org_id=vocal.org_id, id=vocal.id)
        payload = AiJobPayload(org_id=vocal.org_id, entity_id=vocal.id)
        job_id = build_recovery_job_id(
            kind,
            payload,
            attempt=attempt,
            timestamp_ms=int(self._clock().timestamp() * 1000),
        )
        try:
            await self._client.enqueue(kind, payload, job_id=job_id)
        except Exception as exc:  # noqa: BLE001 - an enqueue failure is recorded on the memo
            message = f"Reprise impossible: {error_message(exc)}"
            if attempt >= config.max_attempts:
                await self._finalize(vocal, step, message)
                summary.finalized += 1
            else:
                await self._vocals.mark_processing_failure(
                    org_id=vocal.org_id,
                    id=vocal.id,
                    step=step,
                    message=message,
                    is_final=False,
                )
            return False
        return True

    async def _finalize(self, vocal: VocalRecoveryCandidate, step: VocalProcessingStep, message: str) -> None:
        await self._vocals.mark_processing_failure(
            org_id=vocal.org_id,
            id=vocal.id,
            step=step,
            message=message,
            is_final=True,
        )
        await self._review_queue.create_open_item(
            org_id=vocal.org_id,
            item_type=REVIEW_ITEM_TYPE_VOCAL,
            item_id=vocal.id,
            reason=VOCAL_PROCESSING_ERROR,
            payload={
                "step": step.value,
                "error": message[:RECOVERY_ERROR_MAX_CHARS],
                "source": "recovery",
            },
        )


class VocalRecoveryLoop:
    """Runs recovery passes on a fixed interval, never two at once."""

    def __init__(self, sweeper: VocalRecoverySweeper, config: VocalRecoveryConfig) -> None:
        self._sweeper = sweeper
        self.config = config
        self._ticker: asyncio.Task[None] | None = None
        self._in_flight: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._ticker is not None

    @property
    def pass_in_flight(self) -> bool:
        return self._in_flight is not None

    def start(self) -> None:
        if self._ticker is not None:
            return
        # First pass runs now rather than after one full interval.
        self.run_safely()
        self._ticker = asyncio.create_task(self._tick())

    def run_safely(self) -> asyncio.Task[None]:
        # Check and claim the in-flight slot before yielding to the loop.
        if self._in_flight is not None:
            return self._in_flight
        task = asyncio.create_task(self._run_pass())
        self._in_flight = task
        task.add_done_callback(self._release)
        return task

    def _release(self, task: asyncio.Task[None]) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _tick(self) -> None:
        interval_s = self.config.interval_ms / 1000
        while True:
            await asyncio.sleep(interval_s)
            self.run_safely()

    async def _run_pass(self) -> None:
        try:
            summary = await self._sweeper.run_pass(self.config)
        except Exception as exc:  # noqa: BLE001 - one bad pass must not stop the loop
            logger.exception("vocal.recovery.error error=%s", error_message(exc))
            return
        if summary.has_activity:
            logger.info(
                "vocal.recovery requeued_transcribe=%s requeued_type=%s finalized=%s",
                summary.requeued_transcriptions,
                summary.requeued_type_detections,
                summary.finalized,
            )

    async def stop(self) -> None:
        ticker = self._ticker
        self._ticker = None
        if ticker is not None:
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass
        if self._in_flight is not None:
            await self._in_flight
