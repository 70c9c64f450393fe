from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from mediapulse.api.routes.health import router as health_router
from mediapulse.api.routes.jobs import router as jobs_router
from mediapulse.api.routes.stats import router as stats_router
from mediapulse.api.routes.triggers import router as triggers_router
from mediapulse.core.config import get_settings
from mediapulse.core.logging import configure_logging
from mediapulse.db.init_db import initialize_database
from mediapulse.worker.runtime import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    runtime = build_runtime(settings)
    app.state.runtime = runtime
    runtime.start()
    try:
        yield
    finally:
        runtime.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(triggers_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(stats_router, prefix="/api/v1")
    return app
