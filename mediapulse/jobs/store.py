from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from mediapulse.core.config import Settings
from mediapulse.core.paths import fingerprint as compute_fingerprint
from mediapulse.db.models import (
    ACTIVE_JOB_STATES,
    TERMINAL_JOB_STATES,
    ChangeKind,
    Job,
    JobState,
    JobTarget,
    TargetStatus,
)
from mediapulse.jobs.types import JobMetricsSnapshot, JobSnapshot, TargetOutcomeSnapshot, TargetOutcomeUpdate

logger = logging.getLogger(__name__)


class JobConflictError(RuntimeError):
    pass


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class JobListResult:
    items: list[JobSnapshot]
    next_cursor: str | None


ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.DISPATCHING},
    JobState.DEBOUNCING: {JobState.DEBOUNCING, JobState.DISPATCHING},
    JobState.DISPATCHING: {JobState.COMPLETED, JobState.PARTIALLY_FAILED, JobState.FAILED},
    JobState.PARTIALLY_FAILED: {JobState.DISPATCHING},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobStore:
    """Durable Job table; every mutation is a single transaction.

    State changes go through guarded ``UPDATE ... WHERE state = :expected`` statements, so
    two actors racing on the same Job cannot both win. Nothing here keeps Job state in
    memory between calls.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        target_names: Sequence[str] | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._target_names = list(settings.targets) if target_names is None else list(target_names)

    @property
    def target_names(self) -> list[str]:
        return list(self._target_names)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.dispatch_lease_seconds)

    def _window(self) -> timedelta:
        return timedelta(seconds=self._settings.debounce_window_seconds)

    def _initial_state(self) -> JobState:
        return JobState.PENDING if self._settings.debounce_window_seconds == 0 else JobState.DEBOUNCING

    def _enforce_transition(self, from_state: JobState, to_state: JobState) -> None:
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise InvalidJobStateError(f"Illegal transition: {from_state.value} -> {to_state.value}")

    def _add_job(
        self,
        session: Session,
        *,
        canonical_path: str,
        kind: ChangeKind,
        seen_at: datetime,
        debounce_deadline: datetime,
        state: JobState,
        now: datetime,
    ) -> Job:
        job = Job(
            id=str(uuid4()),
            fingerprint=compute_fingerprint(canonical_path),
            canonical_path=canonical_path,
            state=state,
            last_kind=kind,
            event_count=1,
            first_seen_at=seen_at,
            last_seen_at=seen_at,
            debounce_deadline=debounce_deadline,
            followup_pending=False,
            dispatch_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(job)
        session.flush()
        for position, name in enumerate(self._target_names):
            session.add(
                JobTarget(
                    job_id=job.id,
                    target_name=name,
                    position=position,
                    status=TargetStatus.NOT_ATTEMPTED,
                    attempts=0,
                    permanent=False,
                )
            )
        session.flush()
        return job

    def create_if_absent(
        self,
        *,
        canonical_path: str,
        kind: ChangeKind,
        observed_at: datetime,
        debounce_deadline: datetime,
        state: JobState | None = None,
    ) -> JobSnapshot | None:
        """Insert a new active Job, or return ``None`` when one already exists for the path."""
        initial_state = state or self._initial_state()
        if initial_state not in (JobState.PENDING, JobState.DEBOUNCING):
            raise InvalidJobStateError(f"Jobs cannot be created in state {initial_state.value}")

        fingerprint = compute_fingerprint(canonical_path)
        now = self._now()
        with self._session_factory() as session:
            active = session.scalar(
                select(Job.id).where(Job.fingerprint == fingerprint, Job.state.in_(ACTIVE_JOB_STATES))
            )
            if active is not None:
                return None

            try:
                job = self._add_job(
                    session,
                    canonical_path=canonical_path,
                    kind=kind,
                    seen_at=as_utc(observed_at),
                    debounce_deadline=as_utc(debounce_deadline),
                    state=initial_state,
                    now=now,
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            return self._load_snapshot(session, job.id)

    def extend_debounce(self, job_id: str, *, observed_at: datetime, kind: ChangeKind) -> bool:
        seen_at = as_utc(observed_at)
        deadline = seen_at + self._window()
        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state.in_([JobState.PENDING, JobState.DEBOUNCING]))
                .values(
                    debounce_deadline=case(
                        (Job.debounce_deadline < deadline, deadline),
                        else_=Job.debounce_deadline,
                    ),
                    last_seen_at=case((Job.last_seen_at < seen_at, seen_at), else_=Job.last_seen_at),
                    last_kind=kind,
                    event_count=Job.event_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0) == 1

    def record_followup(self, job_id: str, *, observed_at: datetime, kind: ChangeKind) -> bool:
        seen_at = as_utc(observed_at)
        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state.in_([JobState.DISPATCHING, JobState.PARTIALLY_FAILED]))
                .values(
                    followup_pending=True,
                    followup_seen_at=case(
                        (or_(Job.followup_seen_at.is_(None), Job.followup_seen_at < seen_at), seen_at),
                        else_=Job.followup_seen_at,
                    ),
                    followup_kind=kind,
                    last_seen_at=case((Job.last_seen_at < seen_at, seen_at), else_=Job.last_seen_at),
                    event_count=Job.event_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0) == 1

    def get(self, fingerprint: str) -> JobSnapshot | None:
        """Return the active Job for a fingerprint, falling back to the most recent one."""
        with self._session_factory() as session:
            job_id = session.scalar(
                select(Job.id).where(Job.fingerprint == fingerprint, Job.state.in_(ACTIVE_JOB_STATES))
            )
            if job_id is None:
                job_id = session.scalar(
                    select(Job.id)
                    .where(Job.fingerprint == fingerprint)
                    .order_by(Job.created_at.desc(), Job.id.desc())
                    .limit(1)
                )
            if job_id is None:
                return None
            return self._load_snapshot(session, job_id)

    def get_active(self, fingerprint: str) -> JobSnapshot | None:
        with self._session_factory() as session:
            job_id = session.scalar(
                select(Job.id).where(Job.fingerprint == fingerprint, Job.state.in_(ACTIVE_JOB_STATES))
            )
            if job_id is None:
                return None
            return self._load_snapshot(session, job_id)

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            if session.get(Job, job_id) is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._load_snapshot(session, job_id)

    def history(self, fingerprint: str) -> list[JobSnapshot]:
        with self._session_factory() as session:
            job_ids = session.scalars(
                select(Job.id).where(Job.fingerprint == fingerprint).order_by(Job.created_at.asc(), Job.id.asc())
            ).all()
            return [self._load_snapshot(session, job_id) for job_id in job_ids]

    def transition(
        self,
        fingerprint: str,
        expected_state: JobState,
        new_state: JobState,
        *,
        job_id: str | None = None,
        due_before: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Compare-and-swap the state of the Job identified by ``fingerprint``.

        Returns ``False`` when the Job is no longer in ``expected_state`` (or, with
        ``due_before``, is not yet due). ``job_id`` pins the swap to one Job identity so a
        stale caller cannot act on a newer Job for the same path.
        """
        self._enforce_transition(expected_state, new_state)
        effective_now = as_utc(now) if now is not None else self._now()

        conditions: list[Any] = [Job.fingerprint == fingerprint, Job.state == expected_state]
        if job_id is not None:
            conditions.append(Job.id == job_id)
        if due_before is not None:
            cutoff = as_utc(due_before)
            if expected_state in (JobState.PENDING, JobState.DEBOUNCING):
                conditions.append(Job.debounce_deadline <= cutoff)
            elif expected_state == JobState.PARTIALLY_FAILED:
                conditions.append(Job.next_retry_at <= cutoff)

        values: dict[str, Any] = {"state": new_state, "updated_at": effective_now}
        if new_state == JobState.DISPATCHING:
            values["lease_expires_at"] = effective_now + self._lease_delta()
            values["dispatch_count"] = Job.dispatch_count + 1
            values["error_code"] = None
            values["error_message"] = None
        elif new_state in TERMINAL_JOB_STATES:
            values["finished_at"] = effective_now
            values["lease_expires_at"] = None
            values["next_retry_at"] = None
        elif new_state == JobState.PARTIALLY_FAILED:
            values["lease_expires_at"] = None

        with self._session_factory() as session:
            result = session.execute(
                update(Job).where(*conditions).values(**values).execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def defer(self, job_id: str, expected_state: JobState, until: datetime, *, now: datetime | None = None) -> bool:
        """Push a waiting Job's due time out to ``until`` without changing its state.

        The due time only ever moves later.
        """
        if expected_state in (JobState.PENDING, JobState.DEBOUNCING):
            column = Job.debounce_deadline
        elif expected_state == JobState.PARTIALLY_FAILED:
            column = Job.next_retry_at
        else:
            raise InvalidJobStateError(f"Jobs in state {expected_state.value} cannot be deferred")
        cutoff = as_utc(until)
        values: dict[str, Any] = {
            column.key: case((or_(column.is_(None), column < cutoff), cutoff), else_=column),
            "updated_at": as_utc(now) if now is not None else self._now(),
        }

        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == expected_state)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0) == 1

    def list_due(self, state: JobState, before: datetime, *, limit: int = 100) -> list[JobSnapshot]:
        cutoff = as_utc(before)
        if state in (JobState.PENDING, JobState.DEBOUNCING):
            due_column = Job.debounce_deadline
        elif state == JobState.PARTIALLY_FAILED:
            due_column = Job.next_retry_at
        elif state == JobState.DISPATCHING:
            due_column = Job.lease_expires_at
        else:
            due_column = Job.finished_at

        with self._session_factory() as session:
            job_ids = session.scalars(
                select(Job.id)
                .where(Job.state == state, due_column.is_not(None), due_column <= cutoff)
                .order_by(due_column.asc(), Job.id.asc())
                .limit(max(1, limit))
            ).all()
            return [self._load_snapshot(session, job_id) for job_id in job_ids]

    def finish_dispatch(
        self,
        job_id: str,
        *,
        dispatch_count: int,
        final_state: JobState,
        updates: Sequence[TargetOutcomeUpdate],
        next_retry_at: datetime | None,
        error_code: str | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> JobSnapshot | None:
        """Persist one dispatch pass and leave ``dispatching`` in the same transaction.

        ``dispatch_count`` is the value the claim left behind and identifies that claim.
        Returns ``None`` when the Job is no longer ``dispatching`` under the same claim (its
        lease was recovered, and possibly re-claimed); nothing is written in that case. When the Job becomes
        terminal with a follow-up recorded, the fresh Job is inserted before commit.
        """
        self._enforce_transition(JobState.DISPATCHING, final_state)
        effective_now = as_utc(now) if now is not None else self._now()
        terminal = final_state in TERMINAL_JOB_STATES

        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.state == JobState.DISPATCHING,
                    Job.dispatch_count == dispatch_count,
                )
                .values(
                    state=final_state,
                    next_retry_at=None if terminal else next_retry_at,
                    lease_expires_at=None,
                    error_code=error_code,
                    error_message=error_message,
                    finished_at=effective_now if terminal else None,
                    updated_at=effective_now,
                )
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                session.rollback()
                return None

            rows = {
                row.target_name: row
                for row in session.scalars(select(JobTarget).where(JobTarget.job_id == job_id)).all()
            }
            for item in updates:
                row = rows.get(item.target_name)
                if row is None:
                    row = JobTarget(job_id=job_id, target_name=item.target_name, position=len(rows))
                    session.add(row)
                    rows[item.target_name] = row
                row.status = item.status
                row.attempts = item.attempts
                row.permanent = item.permanent
                row.last_error = item.last_error
                row.next_retry_at = item.next_retry_at
                row.last_attempt_at = item.last_attempt_at
                if item.status == TargetStatus.SUCCEEDED:
                    row.succeeded_at = item.last_attempt_at

            if terminal:
                job = session.get(Job, job_id)
                if job is not None and job.followup_pending:
                    seen_at = self._coerce_utc(job.followup_seen_at) or effective_now
                    followup = self._add_job(
                        session,
                        canonical_path=job.canonical_path,
                        kind=job.followup_kind or job.last_kind,
                        seen_at=seen_at,
                        debounce_deadline=seen_at + self._window(),
                        state=self._initial_state(),
                        now=effective_now,
                    )
                    job.followup_pending = False
                    job.updated_at = effective_now
                    logger.info(
                        "Queued follow-up job %s for %s after job %s finished",
                        followup.id,
                        job.canonical_path,
                        job_id,
                    )

            session.commit()
            return self._load_snapshot(session, job_id)

    def recover_stale_dispatches(self, *, now: datetime | None = None) -> int:
        """Return Jobs whose dispatch lease lapsed to ``partially_failed`` so they are retried."""
        effective_now = as_utc(now) if now is not None else self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.state == JobState.DISPATCHING,
                    or_(Job.lease_expires_at.is_(None), Job.lease_expires_at <= effective_now),
                )
                .values(
                    state=JobState.PARTIALLY_FAILED,
                    next_retry_at=effective_now,
                    lease_expires_at=None,
                    error_code="LEASE_EXPIRED",
                    error_message="Dispatch lease expired before completion",
                    updated_at=effective_now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0)

    def purge_terminal(self, older_than: datetime, *, limit: int = 500) -> int:
        cutoff = as_utc(older_than)
        with self._session_factory() as session:
            job_ids = list(
                session.scalars(
                    select(Job.id)
                    .where(
                        Job.state.in_(TERMINAL_JOB_STATES),
                        Job.finished_at.is_not(None),
                        Job.finished_at < cutoff,
                    )
                    .order_by(Job.finished_at.asc())
                    .limit(max(1, limit))
                ).all()
            )
            if not job_ids:
                return 0
            session.execute(delete(JobTarget).where(JobTarget.job_id.in_(job_ids)))
            session.execute(delete(Job).where(Job.id.in_(job_ids)))
            session.commit()
            return len(job_ids)

    def list_jobs(
        self,
        *,
        limit: int = 50,
        cursor: str | None = None,
        state: JobState | None = None,
    ) -> JobListResult:
        bounded_limit = max(1, min(limit, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = select(Job.id).order_by(Job.created_at.desc(), Job.id.desc()).limit(bounded_limit + 1)
            if state is not None:
                stmt = stmt.where(Job.state == state)
            if cursor:
                anchor_exists = session.scalar(select(Job.id).where(Job.id == cursor))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = select(Job.created_at).where(Job.id == cursor).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        Job.created_at < anchor_created_at,
                        and_(Job.created_at == anchor_created_at, Job.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            page = rows[:bounded_limit]
            next_cursor = page[-1] if len(rows) > bounded_limit and page else None
            return JobListResult(
                items=[self._load_snapshot(session, job_id) for job_id in page],
                next_cursor=next_cursor,
            )

    def get_metrics(self, *, now: datetime | None = None) -> JobMetricsSnapshot:
        effective_now = as_utc(now) if now is not None else self._now()
        with self._session_factory() as session:
            state_counts = dict(session.execute(select(Job.state, func.count()).group_by(Job.state)).all())
            target_rows = session.execute(
                select(JobTarget.target_name, JobTarget.status, func.count())
                .group_by(JobTarget.target_name, JobTarget.status)
            ).all()
            oldest_due = session.scalar(
                select(func.min(Job.debounce_deadline)).where(
                    Job.state.in_([JobState.PENDING, JobState.DEBOUNCING]),
                    Job.debounce_deadline <= effective_now,
                )
            )

        by_state = {state.value: int(state_counts.get(state, 0)) for state in JobState}
        targets: dict[str, dict[str, int]] = {}
        for name, status, count in target_rows:
            bucket = targets.setdefault(name, {item.value: 0 for item in TargetStatus})
            bucket[TargetStatus(status).value] = int(count)

        return JobMetricsSnapshot(
            generated_at=effective_now,
            total=sum(by_state.values()),
            by_state=by_state,
            targets=targets,
            oldest_due_at=self._coerce_utc(oldest_due),
        )

    def _load_snapshot(self, session: Session, job_id: str) -> JobSnapshot:
        job = session.get(Job, job_id, populate_existing=True)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        targets = session.scalars(
            select(JobTarget).where(JobTarget.job_id == job_id).order_by(JobTarget.position.asc(), JobTarget.id.asc())
        ).all()
        return self._to_snapshot(job, list(targets))

    def _to_snapshot(self, job: Job, targets: list[JobTarget]) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            fingerprint=job.fingerprint,
            canonical_path=job.canonical_path,
            state=job.state,
            last_kind=job.last_kind,
            event_count=job.event_count,
            first_seen_at=self._coerce_utc(job.first_seen_at),  # type: ignore[arg-type]
            last_seen_at=self._coerce_utc(job.last_seen_at),  # type: ignore[arg-type]
            debounce_deadline=self._coerce_utc(job.debounce_deadline),  # type: ignore[arg-type]
            next_retry_at=self._coerce_utc(job.next_retry_at),
            followup_pending=job.followup_pending,
            followup_seen_at=self._coerce_utc(job.followup_seen_at),
            dispatch_count=job.dispatch_count,
            lease_expires_at=self._coerce_utc(job.lease_expires_at),
            error_code=job.error_code,
            error_message=job.error_message,
            created_at=self._coerce_utc(job.created_at),  # type: ignore[arg-type]
            updated_at=self._coerce_utc(job.updated_at),  # type: ignore[arg-type]
            finished_at=self._coerce_utc(job.finished_at),
            targets=[
                TargetOutcomeSnapshot(
                    target_name=row.target_name,
                    position=row.position,
                    status=row.status,
                    attempts=row.attempts,
                    permanent=row.permanent,
                    last_error=row.last_error,
                    next_retry_at=self._coerce_utc(row.next_retry_at),
                    last_attempt_at=self._coerce_utc(row.last_attempt_at),
                    succeeded_at=self._coerce_utc(row.succeeded_at),
                )
                for row in targets
            ],
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "fingerprint": snapshot.fingerprint,
        "canonical_path": snapshot.canonical_path,
        "state": snapshot.state.value,
        "last_kind": snapshot.last_kind.value,
        "event_count": snapshot.event_count,
        "first_seen_at": snapshot.first_seen_at,
        "last_seen_at": snapshot.last_seen_at,
        "debounce_deadline": snapshot.debounce_deadline,
        "next_retry_at": snapshot.next_retry_at,
        "followup_pending": snapshot.followup_pending,
        "followup_seen_at": snapshot.followup_seen_at,
        "dispatch_count": snapshot.dispatch_count,
        "lease_expires_at": snapshot.lease_expires_at,
        "error_code": snapshot.error_code,
        "error_message": snapshot.error_message,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "finished_at": snapshot.finished_at,
        "targets": [
            {
                "target_name": outcome.target_name,
                "position": outcome.position,
                "status": outcome.status.value,
                "attempts": outcome.attempts,
                "permanent": outcome.permanent,
                "last_error": outcome.last_error,
                "next_retry_at": outcome.next_retry_at,
                "last_attempt_at": outcome.last_attempt_at,
                "succeeded_at": outcome.succeeded_at,
            }
            for outcome in snapshot.targets
        ],
    }
