from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Literal, Mapping


EnvLike = Mapping[str, str]

DEFAULT_REDIS_URL = "redis://localhost:6379"
DEFAULT_ATTEMPTS = 5
DEFAULT_BACKOFF_DELAY_MS = 3000
DEFAULT_REMOVE_ON_COMPLETE = 1000
DEFAULT_REMOVE_ON_FAIL = 5000
DEFAULT_WORKER_CONCURRENCY = 5
# Ceiling on a single delivery attempt; AI providers own their own request timeouts.
DEFAULT_JOB_TIMEOUT_MS = 6 * 60 * 60 * 1000

_INTEGER_RE = re.compile(r"^[+-]?\d+$")


def _parse_integer(raw: str | None, *, fallback: int, minimum: int) -> int:
    # Invalid values resolve to the field default without affecting other fields.
    if raw is None:
        return fallback
    candidate = raw.strip()
    if not _INTEGER_RE.match(candidate):
        return fallback
    parsed = int(candidate)
    if parsed < minimum:
        return fallback
    return parsed


def parse_positive_integer(raw: str | None, fallback: int) -> int:
    return _parse_integer(raw, fallback=fallback, minimum=1)


def parse_non_negative_integer(raw: str | None, fallback: int) -> int:
    return _parse_integer(raw, fallback=fallback, minimum=0)


@dataclass(frozen=True)
class BackoffPolicy:
    type: Literal["exponential"]
    delay_ms: int


@dataclass(frozen=True)
class JobOptions:
    attempts: int
    backoff: BackoffPolicy
    remove_on_complete: int
    remove_on_fail: int
    timeout_ms: int = DEFAULT_JOB_TIMEOUT_MS

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    def backoff_delay_s(self, attempts_made: int) -> float:
        # Exponential backoff: delay, 2*delay, 4*delay ... between delivery attempts.
        exponent = max(0, int(attempts_made) - 1)
        return (self.backoff.delay_ms * (2**exponent)) / 1000.0

    @property
    def keep_result_s(self) -> int:
        # arq retains results by time for both outcomes; honour the longer window.
        return max(self.remove_on_complete, self.remove_on_fail)


@dataclass(frozen=True)
class QueueRuntimeConfig:
    redis_url: str
    worker_concurrency: int
    default_job_options: JobOptions


def resolve_queue_runtime_config(env: EnvLike | None = None) -> QueueRuntimeConfig:
    env = os.environ if env is None else env
    attempts = parse_positive_integer(env.get("QUEUE_ATTEMPTS"), DEFAULT_ATTEMPTS)
    backoff_delay_ms = parse_positive_integer(env.get("QUEUE_BACKOFF_DELAY_MS"), DEFAULT_BACKOFF_DELAY_MS)
    remove_on_complete = parse_non_negative_integer(
        env.get("QUEUE_REMOVE_ON_COMPLETE"), DEFAULT_REMOVE_ON_COMPLETE
    )
    remove_on_fail = parse_non_negative_integer(env.get("QUEUE_REMOVE_ON_FAIL"), DEFAULT_REMOVE_ON_FAIL)
    worker_concurrency = parse_positive_integer(
        env.get("QUEUE_WORKER_CONCURRENCY"), DEFAULT_WORKER_CONCURRENCY
    )
    job_timeout_ms = parse_positive_integer(env.get("QUEUE_JOB_TIMEOUT_MS"), DEFAULT_JOB_TIMEOUT_MS)
    return QueueRuntimeConfig(
        redis_url=env.get("REDIS_URL") or DEFAULT_REDIS_URL,
        worker_concurrency=worker_concurrency,
        default_job_options=JobOptions(
            attempts=attempts,
            backoff=BackoffPolicy(type="exponential", delay_ms=backoff_delay_ms),
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
            timeout_ms=job_timeout_ms,
        ),
    )
