from __future__ import annotations

import asyncio

import pytest

from estatejobs.domain.jobs import JobKind
from estatejobs.services.queue.metrics import (
    MetricsPublisher,
    MetricsSnapshot,
    QueueMetrics,
    empty_snapshot,
    has_increments,
    metrics_delta,
)


class _RecordingWriter:
    def __init__(self) -> None:
        self.deltas: list[MetricsSnapshot] = []
        self.fail = False

    async def publish_metrics(self, delta: MetricsSnapshot) -> None:
        if self.fail:
            raise ConnectionError("Connection refused")
        self.deltas.append(delta)


def test_delta_counts_only_new_increments() -> None:
    previous = empty_snapshot()
    previous["process_file"]["started"] = 2
    current = empty_snapshot()
    current["process_file"]["started"] = 5
    current["process_file"]["failed"] = 1

    delta = metrics_delta(current, previous)

    assert delta["process_file"] == {"started": 3, "completed": 0, "failed": 1}
    assert has_increments(delta) is True
    assert has_increments(metrics_delta(current, current)) is False


def test_delta_after_local_reset_counts_from_zero() -> None:
    previous = empty_snapshot()
    previous["process_message"]["completed"] = 10
    current = empty_snapshot()
    current["process_message"]["completed"] = 4

    assert metrics_delta(current, previous)["process_message"]["completed"] == 4


@pytest.mark.asyncio
async def test_flush_publishes_each_increment_once() -> None:
    metrics = QueueMetrics()
    writer = _RecordingWriter()
    publisher = MetricsPublisher(metrics, writer, interval_s=60)

    metrics.record_started(JobKind.TRANSCRIBE_VOCAL)
    await publisher.flush()
    await publisher.flush()
    metrics.record_completed(JobKind.TRANSCRIBE_VOCAL)
    await publisher.flush()

    assert len(writer.deltas) == 2
    assert writer.deltas[0]["transcribe_vocal"] == {"started": 1, "completed": 0, "failed": 0}
    assert writer.deltas[1]["transcribe_vocal"] == {"started": 0, "completed": 1, "failed": 0}


@pytest.mark.asyncio
async def test_failed_flush_keeps_counts_for_the_next_one(caplog) -> None:  # noqa: ANN001
    metrics = QueueMetrics()
    writer = _RecordingWriter()
    publisher = MetricsPublisher(metrics, writer, interval_s=60)
    metrics.record_failed(JobKind.PROCESS_FILE)

    writer.fail = True
    await publisher._flush_safely()
    writer.fail = False
    metrics.record_failed(JobKind.PROCESS_FILE)
    await publisher.flush()

    assert "queue.metrics.publish_failed" in caplog.text
    assert [delta["process_file"]["failed"] for delta in writer.deltas] == [2]


@pytest.mark.asyncio
async def test_publisher_ticks_and_flushes_on_stop() -> None:
    metrics = QueueMetrics()
    writer = _RecordingWriter()
    publisher = MetricsPublisher(metrics, writer, interval_s=0.01)

    publisher.start()
    assert publisher.running is True
    metrics.record_started(JobKind.PROCESS_MESSAGE)
    await asyncio.sleep(0.05)
    metrics.record_completed(JobKind.PROCESS_MESSAGE)
    await publisher.stop()

    assert publisher.running is False
    total = sum(delta["process_message"]["started"] + delta["process_message"]["completed"] for delta in writer.deltas)
    assert total == 2
