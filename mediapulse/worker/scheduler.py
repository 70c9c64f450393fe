from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from mediapulse.core.config import Settings
from mediapulse.db.models import JobState
from mediapulse.dispatch.service import DispatchResult, Dispatcher
from mediapulse.jobs.store import JobStore, as_utc
from mediapulse.jobs.types import JobSnapshot

logger = logging.getLogger(__name__)

DUE_BATCH_SIZE = 200
_DUE_STATES = (JobState.PENDING, JobState.DEBOUNCING, JobState.PARTIALLY_FAILED)


@dataclass(frozen=True)
class TickReport:
    started_at: datetime
    recovered: int
    due: int
    claimed: int
    completed: int
    partially_failed: int
    failed: int
    purged: int
    errors: int


class SchedulerLoop:
    """Polls the store for due Jobs and hands them to the dispatcher.

    Debounce deadlines and retry times live in the database, so a restart loses nothing:
    the first tick after startup picks up whatever fell due while the process was down.
    """

    def __init__(self, settings: Settings, store: JobStore, dispatcher: Dispatcher):
        self._settings = settings
        self._store = store
        self._dispatcher = dispatcher
        self._executor = ThreadPoolExecutor(
            max_workers=settings.dispatch_concurrency,
            thread_name_prefix="mediapulse-dispatch",
        )
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._closed = False

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, *, now: datetime | None = None) -> TickReport:
        tick_now = as_utc(now) if now is not None else self._now()
        if self._closed:
            logger.debug("Scheduler is stopped; skipping tick")
            return TickReport(
                started_at=tick_now,
                recovered=0,
                due=0,
                claimed=0,
                completed=0,
                partially_failed=0,
                failed=0,
                purged=0,
                errors=0,
            )
        errors = 0

        recovered = 0
        try:
            recovered = self._store.recover_stale_dispatches(now=tick_now)
        except SQLAlchemyError:
            errors += 1
            logger.exception("Recovering stale dispatches failed")
        if recovered:
            logger.warning("Recovered %d job(s) whose dispatch lease expired", recovered)

        due: list[JobSnapshot] = []
        for state in _DUE_STATES:
            try:
                due.extend(self._store.list_due(state, tick_now, limit=DUE_BATCH_SIZE))
            except SQLAlchemyError:
                errors += 1
                logger.exception("Listing due %s jobs failed", state.value)

        futures: list[Future[DispatchResult]] = []
        for job in due:
            try:
                futures.append(self._executor.submit(self._dispatcher.dispatch, job, now=now))
            except RuntimeError:
                # executor shut down mid-tick; the rest stay due for the next start
                logger.info("Scheduler stopped with %d due job(s) not submitted", len(due) - len(futures))
                break
        results: list[DispatchResult] = []
        for future in futures:
            try:
                results.append(future.result())
            except SQLAlchemyError:
                errors += 1
                logger.exception("Dispatch aborted on a store error; it will be retried")
            except Exception:
                errors += 1
                logger.exception("Dispatch aborted unexpectedly")

        purged = 0
        try:
            purged = self._store.purge_terminal(tick_now - timedelta(seconds=self._settings.retention_seconds))
        except SQLAlchemyError:
            errors += 1
            logger.exception("Purging finished jobs failed")
        if purged:
            logger.info("Purged %d finished job(s) past retention", purged)

        return TickReport(
            started_at=tick_now,
            recovered=recovered,
            due=len(due),
            claimed=sum(1 for result in results if result.claimed),
            completed=sum(1 for result in results if result.state == JobState.COMPLETED),
            partially_failed=sum(1 for result in results if result.state == JobState.PARTIALLY_FAILED),
            failed=sum(1 for result in results if result.state == JobState.FAILED),
            purged=purged,
            errors=errors,
        )

    def _run(self) -> None:
        logger.info("Scheduler started (tick %gs)", self._settings.scheduler_tick_seconds)
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(self._settings.scheduler_tick_seconds)
        logger.info("Scheduler stopped")

    def start(self) -> None:
        if self.running or self._closed:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="mediapulse-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
