from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from mediapulse.api.deps import get_runtime
from mediapulse.worker.runtime import Runtime

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    settings = runtime.settings
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "scheduler_running": runtime.scheduler.running,
        "sources": sorted(settings.triggers),
        "targets": runtime.store.target_names,
        "timestamp": datetime.now(tz=timezone.utc),
    }
