from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends

from mediapulse.api.deps import get_runtime
from mediapulse.api.schemas.stats import StatsResponse, TickResponse
from mediapulse.worker.runtime import Runtime

router = APIRouter(tags=["stats"])


@router.get("/stats", response_model=StatsResponse)
def get_stats(runtime: Runtime = Depends(get_runtime)) -> StatsResponse:
    metrics = runtime.store.get_metrics()
    return StatsResponse.model_validate({**asdict(metrics), "triggers": runtime.triggers.get_counters()})


@router.post("/scheduler/tick", response_model=TickResponse)
def run_scheduler_tick(runtime: Runtime = Depends(get_runtime)) -> TickResponse:
    report = runtime.scheduler.run_once()
    return TickResponse.model_validate(asdict(report))
