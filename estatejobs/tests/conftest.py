from __future__ import annotations

import pytest

from estatejobs.core.config import get_settings
from estatejobs.services.queue.runtime import get_queue_runtime


@pytest.fixture(autouse=True)
def isolate_cached_settings(monkeypatch) -> None:
    # Start every test with dispatch disabled and fresh process-wide caches.
    monkeypatch.setenv("ENABLE_QUEUE", "false")
    get_settings.cache_clear()
    get_queue_runtime.cache_clear()
    yield
    get_settings.cache_clear()
    get_queue_runtime.cache_clear()


@pytest.fixture
def enable_queue(monkeypatch) -> None:
    monkeypatch.setenv("ENABLE_QUEUE", "true")
    get_settings.cache_clear()


@pytest.fixture
async def sqlite_session_factory():
    # Schema-only database per test; StaticPool keeps the in-memory db on one connection.
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool

    from estatejobs.domain.models import Base

    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
