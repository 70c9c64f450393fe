from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class TargetOutcomeResponse(BaseModel):
    target_name: str
    position: int
    status: str
    attempts: int
    permanent: bool
    last_error: str | None
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    succeeded_at: datetime | None


class JobResponse(BaseModel):
    id: str
    fingerprint: str
    canonical_path: str
    state: str
    last_kind: str
    event_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    debounce_deadline: datetime
    next_retry_at: datetime | None
    followup_pending: bool
    followup_seen_at: datetime | None
    dispatch_count: int
    lease_expires_at: datetime | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None
    targets: list[TargetOutcomeResponse]


class JobListResponse(BaseModel):
    items: list[JobResponse]
    next_cursor: str | None


class DispatchResponse(BaseModel):
    claimed: bool
    state: str | None
    attempted: list[str]
    job: JobResponse
