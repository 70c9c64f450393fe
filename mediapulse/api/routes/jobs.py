from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from mediapulse.api.deps import get_runtime
from mediapulse.api.schemas.jobs import DispatchResponse, JobListResponse, JobResponse
from mediapulse.db.models import JobState
from mediapulse.jobs.store import InvalidJobStateError, JobConflictError, JobNotFoundError, snapshot_to_dict
from mediapulse.worker.runtime import Runtime

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = None,
    state: JobState | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> JobListResponse:
    try:
        result = runtime.store.list_jobs(limit=limit, cursor=cursor, state=state)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobListResponse(
        items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/fingerprint/{fingerprint}", response_model=JobResponse)
def get_job_by_fingerprint(fingerprint: str, runtime: Runtime = Depends(get_runtime)) -> JobResponse:
    job = runtime.store.get(fingerprint)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No job for fingerprint: {fingerprint}")
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)) -> JobResponse:
    try:
        job = runtime.store.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/dispatch", response_model=DispatchResponse)
def dispatch_job(job_id: str, force: bool = False, runtime: Runtime = Depends(get_runtime)) -> DispatchResponse:
    try:
        job = runtime.store.get_job(job_id)
        result = runtime.dispatcher.dispatch(job, force=force)
        current = result.snapshot or runtime.store.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidJobStateError, JobConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    if not result.claimed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is {current.state.value}; it is not due or is being dispatched elsewhere",
        )
    return DispatchResponse(
        claimed=result.claimed,
        state=result.state.value if result.state else None,
        attempted=list(result.attempted),
        job=JobResponse.model_validate(snapshot_to_dict(current)),
    )
