from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from estatejobs.apps.api.deps import get_runtime
from estatejobs.apps.api.main import create_app
from estatejobs.domain.jobs import AiJobPayload, JobKind
from estatejobs.services.queue.connection import QueueConnectionManager
from estatejobs.services.queue.dispatch import enqueue_file_ai_job
from estatejobs.services.queue.metrics import MetricsPublisher
from estatejobs.services.queue.runtime import QueueRuntime
from estatejobs.tests.utils.fakes import FakeArqRedis


def _client(runtime: QueueRuntime) -> AsyncClient:
    app = create_app()
    app.dependency_overrides[get_runtime] = lambda: runtime
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _runtime(redis: FakeArqRedis) -> QueueRuntime:
    return QueueRuntime(env={}, connections=QueueConnectionManager(factory=lambda _url: redis))


@pytest.mark.asyncio
async def test_health() -> None:
    async with _client(_runtime(FakeArqRedis())) as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_queue_metrics_snapshot_and_reset() -> None:
    runtime = _runtime(FakeArqRedis())
    runtime.metrics.record_started(JobKind.TRANSCRIBE_VOCAL)
    runtime.metrics.record_failed(JobKind.TRANSCRIBE_VOCAL)

    async with _client(runtime) as client:
        response = await client.get("/ops/queues/metrics")
        body = response.json()
        assert response.status_code == 200
        assert body["queue_enabled"] is False
        assert body["queues"]["transcribe_vocal"] == {"started": 1, "completed": 0, "failed": 1}
        assert set(body["queues"]) == {kind.value for kind in JobKind}
        assert all(depth is None for depth in body["queue_depth"].values())

        reset = await client.post("/ops/queues/metrics/reset")
        assert reset.status_code == 200
        assert reset.json()["queues"]["transcribe_vocal"] == {"started": 0, "completed": 0, "failed": 0}

    assert runtime.metrics.snapshot()["transcribe_vocal"]["started"] == 0


@pytest.mark.asyncio
async def test_queue_depth_reported_when_enabled(enable_queue) -> None:
    redis = FakeArqRedis()
    runtime = _runtime(redis)

    await enqueue_file_ai_job(AiJobPayload(org_id="org-1", entity_id="f-1"), runtime=runtime)

    async with _client(runtime) as client:
        body = (await client.get("/ops/queues/metrics")).json()
    assert body["queue_enabled"] is True
    assert body["queue_depth"]["process_file"] == 1
    assert body["queue_depth"]["process_message"] == 0


@pytest.mark.asyncio
async def test_queue_depth_degrades_when_broker_down(enable_queue) -> None:
    async with _client(_runtime(FakeArqRedis(fail=True))) as client:
        response = await client.get("/ops/queues/metrics")
    assert response.status_code == 200
    assert all(depth is None for depth in response.json()["queue_depth"].values())
    assert response.json()["queues"] is None


@pytest.mark.asyncio
async def test_queue_metrics_report_totals_published_by_workers(enable_queue) -> None:
    redis = FakeArqRedis()
    worker_runtime = _runtime(redis)
    publisher = MetricsPublisher(worker_runtime.metrics, worker_runtime, interval_s=60)
    worker_runtime.metrics.record_started(JobKind.PROCESS_MESSAGE)
    worker_runtime.metrics.record_completed(JobKind.PROCESS_MESSAGE)
    worker_runtime.metrics.record_started(JobKind.TRANSCRIBE_VOCAL)
    worker_runtime.metrics.record_failed(JobKind.TRANSCRIBE_VOCAL)
    await publisher.flush()
    api_runtime = _runtime(redis)

    async with _client(api_runtime) as client:
        body = (await client.get("/ops/queues/metrics")).json()
        assert body["queues"]["process_message"] == {"started": 1, "completed": 1, "failed": 0}
        assert body["queues"]["transcribe_vocal"] == {"started": 1, "completed": 0, "failed": 1}

        reset = await client.post("/ops/queues/metrics/reset")
        assert reset.status_code == 200
        assert reset.json()["queues"]["process_message"] == {"started": 0, "completed": 0, "failed": 0}

        # Workers keep publishing only what happened after the reset.
        worker_runtime.metrics.record_started(JobKind.PROCESS_MESSAGE)
        await publisher.flush()
        body = (await client.get("/ops/queues/metrics")).json()
        assert body["queues"]["process_message"] == {"started": 1, "completed": 0, "failed": 0}


@pytest.mark.asyncio
async def test_queue_metrics_reset_fails_when_broker_down(enable_queue) -> None:
    async with _client(_runtime(FakeArqRedis(fail=True))) as client:
        response = await client.post("/ops/queues/metrics/reset")
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "QUEUE_UNAVAILABLE"
