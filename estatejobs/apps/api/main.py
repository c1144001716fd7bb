from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from estatejobs.apps.api.routes.health import router as health_router
from estatejobs.apps.api.routes.ops import router as ops_router
from estatejobs.core.config import get_settings
from estatejobs.core.logging import configure_logging
from estatejobs.services.queue.runtime import get_queue_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Release the broker connection opened by dispatch or depth checks.
    await get_queue_runtime().connections.close()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=f"{get_settings().app_name} API", lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(ops_router)
    return app


app = create_app()
