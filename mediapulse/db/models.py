from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobState(str, Enum):
    PENDING = "pending"
    DEBOUNCING = "debouncing"
    DISPATCHING = "dispatching"
    PARTIALLY_FAILED = "partially_failed"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATES = (
    JobState.PENDING,
    JobState.DEBOUNCING,
    JobState.DISPATCHING,
    JobState.PARTIALLY_FAILED,
)
TERMINAL_JOB_STATES = (JobState.COMPLETED, JobState.FAILED)


class TargetStatus(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    canonical_path: Mapped[str] = mapped_column(String(4096), nullable=False)
    state: Mapped[JobState] = mapped_column(
        SAEnum(JobState, native_enum=False, values_callable=_enum_values, length=32),
        nullable=False,
        default=JobState.DEBOUNCING,
    )
    last_kind: Mapped[ChangeKind] = mapped_column(
        SAEnum(ChangeKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=ChangeKind.MODIFIED,
    )
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    debounce_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    followup_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    followup_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    followup_kind: Mapped[ChangeKind | None] = mapped_column(
        SAEnum(ChangeKind, native_enum=False, values_callable=_enum_values),
        nullable=True,
    )

    dispatch_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_fingerprint_created", "fingerprint", "created_at"),
        Index("ix_jobs_state_deadline", "state", "debounce_deadline"),
        Index("ix_jobs_state_retry", "state", "next_retry_at"),
        Index("ix_jobs_state_lease", "state", "lease_expires_at"),
        Index("ix_jobs_state_finished", "state", "finished_at"),
        Index("ix_jobs_created_id", "created_at", "id"),
    )


class JobTarget(Base):
    __tablename__ = "job_targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    target_name: Mapped[str] = mapped_column(String(128), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[TargetStatus] = mapped_column(
        SAEnum(TargetStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=TargetStatus.NOT_ATTEMPTED,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    permanent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    succeeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("job_id", "target_name", name="uq_job_targets_job_id_target_name"),
        Index("ix_job_targets_job_position", "job_id", "position"),
        Index("ix_job_targets_name_status", "target_name", "status"),
    )


class TriggerSource(Base):
    __tablename__ = "trigger_sources"

    source_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dropped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    admitted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
