from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from mediapulse.db.models import ChangeKind, JobState, TargetStatus


@dataclass(slots=True)
class TargetOutcomeSnapshot:
    target_name: str
    position: int
    status: TargetStatus
    attempts: int
    permanent: bool
    last_error: str | None
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    succeeded_at: datetime | None


@dataclass(slots=True)
class JobSnapshot:
    id: str
    fingerprint: str
    canonical_path: str
    state: JobState
    last_kind: ChangeKind
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
    targets: list[TargetOutcomeSnapshot] = field(default_factory=list)

    def target(self, name: str) -> TargetOutcomeSnapshot | None:
        for outcome in self.targets:
            if outcome.target_name == name:
                return outcome
        return None


@dataclass(frozen=True)
class TargetOutcomeUpdate:
    """New values for one target row, written when a dispatch pass finishes."""

    target_name: str
    status: TargetStatus
    attempts: int
    permanent: bool
    last_error: str | None
    next_retry_at: datetime | None
    last_attempt_at: datetime


@dataclass(frozen=True)
class JobMetricsSnapshot:
    generated_at: datetime
    total: int
    by_state: dict[str, int]
    targets: dict[str, dict[str, int]]
    oldest_due_at: datetime | None
