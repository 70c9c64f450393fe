from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Mapping

from mediapulse.core.config import Settings
from mediapulse.db.models import ChangeKind, JobState, TargetStatus
from mediapulse.jobs.store import JobStore, as_utc
from mediapulse.jobs.types import JobSnapshot, TargetOutcomeSnapshot, TargetOutcomeUpdate
from mediapulse.targets.base import BackendError, RescanTarget
from mediapulse.webhooks.service import WebhookEvent, WebhookNotifier

logger = logging.getLogger(__name__)

_CLAIMABLE_STATES = (JobState.PENDING, JobState.DEBOUNCING, JobState.PARTIALLY_FAILED)


@dataclass(frozen=True)
class AttemptResult:
    target_name: str
    succeeded: bool
    error: str | None = None
    permanent: bool = False


@dataclass(frozen=True)
class DispatchResult:
    job_id: str
    fingerprint: str
    claimed: bool
    state: JobState | None = None
    attempted: tuple[str, ...] = ()
    snapshot: JobSnapshot | None = None
    outcomes: dict[str, AttemptResult] = field(default_factory=dict)


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> timedelta:
    """Delay before retry after the ``attempt``-th failure: ``base * 2^(attempt-1)``, capped."""
    exponent = min(max(attempt, 1) - 1, 32)
    return timedelta(seconds=min(base_seconds * (2**exponent), max_seconds))


class Dispatcher:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        targets: Mapping[str, RescanTarget],
        notifier: WebhookNotifier | None = None,
    ):
        self._settings = settings
        self._store = store
        self._targets = dict(targets)
        self._notifier = notifier or WebhookNotifier()

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _is_due(self, outcome: TargetOutcomeSnapshot, now: datetime, force: bool) -> bool:
        if outcome.status == TargetStatus.NOT_ATTEMPTED:
            return True
        if outcome.status != TargetStatus.FAILED or outcome.permanent:
            return False
        if outcome.attempts >= self._settings.max_attempts:
            return False
        if force:
            return True
        return outcome.next_retry_at is None or outcome.next_retry_at <= now

    def dispatch(self, job: JobSnapshot, *, now: datetime | None = None, force: bool = False) -> DispatchResult:
        """Claim ``job`` and send one rescan pass to every due target.

        Only the caller whose compare-and-swap into ``dispatching`` succeeds does any
        work; everyone else gets ``claimed=False`` back. ``force`` skips the remaining
        debounce or retry wait but never a state check.
        """
        effective_now = as_utc(now) if now is not None else self._now()
        if job.state not in _CLAIMABLE_STATES:
            return DispatchResult(job_id=job.id, fingerprint=job.fingerprint, claimed=False, state=job.state)

        if self._awaits_path(job):
            until = effective_now + timedelta(seconds=self._settings.check_path_retry_seconds)
            self._store.defer(job.id, job.state, until, now=effective_now)
            logger.debug("Holding job %s until %s exists", job.id, job.canonical_path)
            return DispatchResult(job_id=job.id, fingerprint=job.fingerprint, claimed=False, state=job.state)

        won = self._store.transition(
            job.fingerprint,
            job.state,
            JobState.DISPATCHING,
            job_id=job.id,
            due_before=None if force else effective_now,
            now=effective_now,
        )
        if not won:
            logger.debug("Job %s was claimed elsewhere or is not due", job.id)
            return DispatchResult(job_id=job.id, fingerprint=job.fingerprint, claimed=False)

        claimed = self._store.get_job(job.id)
        if self._settings.check_path and claimed.dispatch_count == 1 and claimed.last_kind != ChangeKind.DELETED:
            self._notifier.notify(WebhookEvent.FOUND, [claimed.canonical_path])
        due_names = [outcome.target_name for outcome in claimed.targets if self._is_due(outcome, effective_now, force)]
        if not claimed.targets:
            logger.warning("Job %s for %s has no targets configured", claimed.id, claimed.canonical_path)

        results = self._invoke_all(due_names, claimed.canonical_path)
        updates = self._build_updates(claimed, results, effective_now)
        final_state, next_retry_at = self._settle(claimed, updates, effective_now)

        failed_names = [
            outcome.target_name
            for outcome in claimed.targets
            if (updates.get(outcome.target_name) or outcome).status == TargetStatus.FAILED
        ]
        error_code: str | None = None
        error_message: str | None = None
        if final_state == JobState.FAILED:
            error_code = "TARGETS_EXHAUSTED"
            error_message = "Delivery failed for: " + ", ".join(failed_names)
        elif final_state == JobState.PARTIALLY_FAILED:
            error_code = "PARTIAL_FAILURE"
            error_message = "Retry pending for: " + ", ".join(failed_names)

        snapshot = self._store.finish_dispatch(
            claimed.id,
            dispatch_count=claimed.dispatch_count,
            final_state=final_state,
            updates=list(updates.values()),
            next_retry_at=next_retry_at,
            error_code=error_code,
            error_message=error_message,
            now=effective_now,
        )
        if snapshot is None:
            logger.warning("Job %s lost its dispatch lease before outcomes were recorded", claimed.id)
            return DispatchResult(
                job_id=claimed.id,
                fingerprint=claimed.fingerprint,
                claimed=True,
                attempted=tuple(due_names),
                outcomes=results,
            )

        if final_state == JobState.COMPLETED:
            logger.info("Rescan of %s delivered to %d target(s)", claimed.canonical_path, len(claimed.targets))
            self._notifier.notify(WebhookEvent.PROCESSED, [claimed.canonical_path])
        elif final_state == JobState.FAILED:
            logger.error("Giving up on %s: %s", claimed.canonical_path, error_message)
            self._notifier.notify(WebhookEvent.ERROR, [claimed.canonical_path], error_message)
        else:
            logger.warning(
                "Rescan of %s partially failed, next retry at %s",
                claimed.canonical_path,
                next_retry_at.isoformat() if next_retry_at else "-",
            )

        return DispatchResult(
            job_id=claimed.id,
            fingerprint=claimed.fingerprint,
            claimed=True,
            state=final_state,
            attempted=tuple(due_names),
            snapshot=snapshot,
            outcomes=results,
        )

    def _awaits_path(self, job: JobSnapshot) -> bool:
        # deletions are delivered whether or not the path is still there
        if not self._settings.check_path or job.last_kind == ChangeKind.DELETED:
            return False
        return not Path(job.canonical_path).exists()

    def _invoke(self, target_name: str, canonical_path: str) -> AttemptResult:
        target = self._targets.get(target_name)
        if target is None:
            return AttemptResult(
                target_name=target_name,
                succeeded=False,
                error=f"Target {target_name} is not configured",
                permanent=True,
            )
        try:
            target.trigger_rescan(canonical_path)
        except BackendError as exc:
            logger.warning("Target %s rejected %s: %s", target_name, canonical_path, exc)
            return AttemptResult(target_name=target_name, succeeded=False, error=str(exc), permanent=exc.permanent)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Target %s raised while rescanning %s", target_name, canonical_path, exc_info=True)
            return AttemptResult(target_name=target_name, succeeded=False, error=f"{type(exc).__name__}: {exc}")
        return AttemptResult(target_name=target_name, succeeded=True)

    def _invoke_all(self, target_names: list[str], canonical_path: str) -> dict[str, AttemptResult]:
        if not target_names:
            return {}

        executor = ThreadPoolExecutor(max_workers=len(target_names), thread_name_prefix="mediapulse-target")
        started = time.monotonic()
        futures: dict[str, Future[AttemptResult]] = {
            name: executor.submit(self._invoke, name, canonical_path) for name in target_names
        }
        results: dict[str, AttemptResult] = {}
        try:
            for name in sorted(target_names, key=self._settings.timeout_for):
                timeout = self._settings.timeout_for(name)
                remaining = max(0.0, started + timeout - time.monotonic())
                try:
                    results[name] = futures[name].result(timeout=remaining)
                except FutureTimeoutError:
                    logger.warning("Target %s timed out after %gs for %s", name, timeout, canonical_path)
                    results[name] = AttemptResult(
                        target_name=name,
                        succeeded=False,
                        error=f"Timed out after {timeout:g}s",
                    )
        finally:
            # a hung adapter keeps its worker thread; the pass does not wait for it
            executor.shutdown(wait=False, cancel_futures=True)
        return {name: results[name] for name in target_names}

    def _build_updates(
        self,
        job: JobSnapshot,
        results: dict[str, AttemptResult],
        now: datetime,
    ) -> dict[str, TargetOutcomeUpdate]:
        updates: dict[str, TargetOutcomeUpdate] = {}
        for outcome in job.targets:
            result = results.get(outcome.target_name)
            if result is None:
                continue
            attempts = outcome.attempts + 1
            if result.succeeded:
                updates[outcome.target_name] = TargetOutcomeUpdate(
                    target_name=outcome.target_name,
                    status=TargetStatus.SUCCEEDED,
                    attempts=attempts,
                    permanent=False,
                    last_error=None,
                    next_retry_at=None,
                    last_attempt_at=now,
                )
                continue

            retry_at: datetime | None = None
            if not result.permanent and attempts < self._settings.max_attempts:
                retry_at = now + backoff_delay(
                    attempts,
                    base_seconds=self._settings.retry_base_seconds,
                    max_seconds=self._settings.retry_max_seconds,
                )
            updates[outcome.target_name] = TargetOutcomeUpdate(
                target_name=outcome.target_name,
                status=TargetStatus.FAILED,
                attempts=attempts,
                permanent=result.permanent,
                last_error=result.error,
                next_retry_at=retry_at,
                last_attempt_at=now,
            )
        return updates

    def _settle(
        self,
        job: JobSnapshot,
        updates: dict[str, TargetOutcomeUpdate],
        now: datetime,
    ) -> tuple[JobState, datetime | None]:
        statuses: list[TargetStatus] = []
        retry_times: list[datetime] = []
        for outcome in job.targets:
            update = updates.get(outcome.target_name)
            status = update.status if update else outcome.status
            permanent = update.permanent if update else outcome.permanent
            attempts = update.attempts if update else outcome.attempts
            next_retry_at = update.next_retry_at if update else outcome.next_retry_at
            statuses.append(status)
            if status == TargetStatus.NOT_ATTEMPTED:
                retry_times.append(now)
            elif (
                status == TargetStatus.FAILED
                and not permanent
                and attempts < self._settings.max_attempts
                and next_retry_at is not None
            ):
                retry_times.append(next_retry_at)

        if all(status == TargetStatus.SUCCEEDED for status in statuses):
            return JobState.COMPLETED, None
        if retry_times:
            return JobState.PARTIALLY_FAILED, min(retry_times)
        return JobState.FAILED, None
