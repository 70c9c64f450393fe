from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class TriggerCountersResponse(BaseModel):
    type: str | None
    received: int
    admitted: int
    dropped: int
    last_event_at: datetime | None


class StatsResponse(BaseModel):
    generated_at: datetime
    total: int
    by_state: dict[str, int]
    targets: dict[str, dict[str, int]]
    oldest_due_at: datetime | None
    triggers: dict[str, TriggerCountersResponse]


class TickResponse(BaseModel):
    started_at: datetime
    recovered: int
    due: int
    claimed: int
    completed: int
    partially_failed: int
    failed: int
    purged: int
    errors: int
