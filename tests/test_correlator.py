from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import mediapulse.db.session as db_session_module
from mediapulse.core.config import get_settings
from mediapulse.db.init_db import initialize_database
from mediapulse.db.models import ChangeKind, JobState
from mediapulse.jobs.correlator import Correlator
from mediapulse.jobs.store import JobStore

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def setup_env(tmp_path: Path) -> tuple[JobStore, Correlator]:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["MEDIAPULSE_STATE_ROOT"] = state_root.as_posix()
    os.environ["MEDIAPULSE_DEBOUNCE_WINDOW_SECONDS"] = "10"
    os.environ["MEDIAPULSE_SCHEDULER_TICK_SECONDS"] = "0.5"
    os.environ.pop("MEDIAPULSE_DATABASE_URL", None)

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    settings = get_settings()
    store = JobStore(settings, db_session_module.get_session_factory(), target_names=["plex"])
    return store, Correlator(settings, store)


def test_burst_within_window_coalesces_into_one_job(tmp_path: Path) -> None:
    store, correlator = setup_env(tmp_path)

    keys = {
        correlator.admit("/media/X", T0),
        correlator.admit("/media/X", T0 + timedelta(seconds=2)),
        correlator.admit("/media/./X/", T0 + timedelta(seconds=5)),
    }

    assert len(keys) == 1
    history = store.history(keys.pop())
    assert len(history) == 1
    job = history[0]
    assert job.state == JobState.DEBOUNCING
    assert job.debounce_deadline == T0 + timedelta(seconds=15)
    assert job.first_seen_at == T0
    assert job.last_seen_at == T0 + timedelta(seconds=5)
    assert job.event_count == 3

    assert store.list_due(JobState.DEBOUNCING, T0 + timedelta(seconds=14)) == []
    assert [due.id for due in store.list_due(JobState.DEBOUNCING, T0 + timedelta(seconds=15))] == [job.id]


def test_concurrent_admits_for_one_path_create_one_job(tmp_path: Path) -> None:
    store, correlator = setup_env(tmp_path)
    barrier = threading.Barrier(6)
    errors: list[BaseException] = []
    lock = threading.Lock()

    def admit(offset: int) -> None:
        try:
            barrier.wait(timeout=2)
            correlator.admit("/media/tv/Show", T0 + timedelta(seconds=offset))
        except BaseException as exc:  # noqa: BLE001
            with lock:
                errors.append(exc)

    threads = [threading.Thread(target=admit, args=(offset,)) for offset in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    [job] = store.history(correlator.admit("/media/tv/Show", T0))
    assert job.event_count == 7
    assert job.debounce_deadline == T0 + timedelta(seconds=15)


def test_change_during_dispatch_becomes_followup_job(tmp_path: Path) -> None:
    store, correlator = setup_env(tmp_path)
    key = correlator.admit("/media/X", T0)
    [job] = store.history(key)
    dispatch_at = T0 + timedelta(seconds=10)
    assert store.transition(key, JobState.DEBOUNCING, JobState.DISPATCHING, job_id=job.id, now=dispatch_at)

    assert correlator.admit("/media/X", T0 + timedelta(seconds=11), ChangeKind.DELETED) == key
    in_flight = store.get_job(job.id)
    assert in_flight.state == JobState.DISPATCHING
    assert in_flight.followup_pending
    assert in_flight.debounce_deadline == T0 + timedelta(seconds=10)

    store.finish_dispatch(
        job.id, dispatch_count=1, final_state=JobState.COMPLETED, updates=[], next_retry_at=None, now=dispatch_at
    )

    history = store.history(key)
    assert sorted(item.state.value for item in history) == ["completed", "debouncing"]
    followup = store.get_active(key)
    assert followup is not None
    assert followup.id != job.id
    assert followup.last_kind == ChangeKind.DELETED
    assert followup.debounce_deadline == T0 + timedelta(seconds=21)
    assert not store.get_job(job.id).followup_pending


def test_change_after_terminal_job_opens_new_job(tmp_path: Path) -> None:
    store, correlator = setup_env(tmp_path)
    key = correlator.admit("/media/X", T0)
    [job] = store.history(key)
    assert store.transition(key, JobState.DEBOUNCING, JobState.DISPATCHING, job_id=job.id)
    store.finish_dispatch(job.id, dispatch_count=1, final_state=JobState.FAILED, updates=[], next_retry_at=None)

    correlator.admit("/media/X", T0 + timedelta(minutes=5))

    assert len(store.history(key)) == 2
    assert store.get_job(job.id).state == JobState.FAILED
    fresh = store.get_active(key)
    assert fresh is not None
    assert fresh.state == JobState.DEBOUNCING
    assert fresh.id != job.id
