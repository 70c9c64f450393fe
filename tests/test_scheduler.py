from __future__ import annotations

import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy.exc import OperationalError

import mediapulse.db.session as db_session_module
from mediapulse.core.config import get_settings
from mediapulse.db.init_db import initialize_database
from mediapulse.db.models import JobState, TargetStatus
from mediapulse.worker.runtime import Runtime, build_runtime

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingTarget:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def trigger_rescan(self, canonical_path: str) -> None:
        with self._lock:
            self.calls.append(canonical_path)


def setup_env(tmp_path: Path, targets: dict[str, RecordingTarget], *, window: str = "10") -> Runtime:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["MEDIAPULSE_STATE_ROOT"] = state_root.as_posix()
    os.environ["MEDIAPULSE_DEBOUNCE_WINDOW_SECONDS"] = window
    os.environ["MEDIAPULSE_SCHEDULER_TICK_SECONDS"] = "0.05"
    os.environ["MEDIAPULSE_DISPATCH_LEASE_SECONDS"] = "60"
    os.environ["MEDIAPULSE_TARGET_TIMEOUT_SECONDS"] = "5"
    os.environ["MEDIAPULSE_RETENTION_SECONDS"] = "3600"
    os.environ["MEDIAPULSE_TRIGGERS"] = '{"manual": {"type": "manual"}}'
    os.environ.pop("MEDIAPULSE_DATABASE_URL", None)

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    return build_runtime(get_settings(), targets=targets)


def test_tick_dispatches_due_jobs_once(tmp_path: Path) -> None:
    target = RecordingTarget()
    runtime = setup_env(tmp_path, {"plex": target})
    for offset in (0, 2, 5):
        runtime.triggers.emit("/media/X", "manual", observed_at=T0 + timedelta(seconds=offset))
    runtime.triggers.emit("/media/Y", "manual", observed_at=T0 + timedelta(seconds=30))

    early = runtime.scheduler.run_once(now=T0 + timedelta(seconds=14))
    assert early.claimed == 0
    assert target.calls == []

    report = runtime.scheduler.run_once(now=T0 + timedelta(seconds=15))
    assert report.due == 1
    assert report.claimed == 1
    assert report.completed == 1
    assert target.calls == ["/media/X"]

    later = runtime.scheduler.run_once(now=T0 + timedelta(seconds=20))
    assert later.claimed == 0
    assert target.calls == ["/media/X"]
    runtime.stop()


def test_zero_window_dispatches_pending_jobs_on_next_tick(tmp_path: Path) -> None:
    target = RecordingTarget()
    runtime = setup_env(tmp_path, {"plex": target}, window="0")
    [key] = runtime.triggers.emit("/media/X", "manual", observed_at=T0).fingerprints
    assert runtime.store.get(key).state == JobState.PENDING

    report = runtime.scheduler.run_once(now=T0)
    assert report.completed == 1
    assert runtime.store.get(key).state == JobState.COMPLETED
    runtime.stop()


def test_tick_recovers_expired_dispatch_lease(tmp_path: Path) -> None:
    target = RecordingTarget()
    runtime = setup_env(tmp_path, {"plex": target})
    [key] = runtime.triggers.emit("/media/X", "manual", observed_at=T0).fingerprints
    job = runtime.store.get(key)
    # simulate a process that crashed after claiming the job
    assert runtime.store.transition(key, JobState.DEBOUNCING, JobState.DISPATCHING, now=T0 + timedelta(seconds=10))

    report = runtime.scheduler.run_once(now=T0 + timedelta(seconds=71))

    assert report.recovered == 1
    assert report.completed == 1
    finished = runtime.store.get_job(job.id)
    assert finished.state == JobState.COMPLETED
    assert finished.dispatch_count == 2
    assert finished.target("plex").status == TargetStatus.SUCCEEDED
    runtime.stop()


def test_tick_purges_jobs_past_retention(tmp_path: Path) -> None:
    runtime = setup_env(tmp_path, {"plex": RecordingTarget()})
    [key] = runtime.triggers.emit("/media/X", "manual", observed_at=T0).fingerprints
    runtime.scheduler.run_once(now=T0 + timedelta(seconds=10))
    assert runtime.store.get(key).state == JobState.COMPLETED

    assert runtime.scheduler.run_once(now=T0 + timedelta(minutes=30)).purged == 0
    assert runtime.scheduler.run_once(now=T0 + timedelta(hours=2)).purged == 1
    assert runtime.store.get(key) is None
    runtime.stop()


def test_store_error_is_contained_to_one_tick(tmp_path: Path, monkeypatch) -> None:
    runtime = setup_env(tmp_path, {"plex": RecordingTarget()})

    def broken(*_args, **_kwargs):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(runtime.store, "recover_stale_dispatches", broken)
    report = runtime.scheduler.run_once(now=T0)
    assert report.errors == 1
    assert report.recovered == 0
    runtime.stop()


def test_background_loop_dispatches_without_explicit_ticks(tmp_path: Path) -> None:
    target = RecordingTarget()
    runtime = setup_env(tmp_path, {"plex": target}, window="0")
    runtime.triggers.emit("/media/X", "manual")

    runtime.scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while not target.calls and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        runtime.scheduler.stop()

    assert target.calls == ["/media/X"]
    assert not runtime.scheduler.running


def test_tick_after_stop_is_a_no_op(tmp_path: Path) -> None:
    target = RecordingTarget()
    runtime = setup_env(tmp_path, {"plex": target})
    [key] = runtime.triggers.emit("/media/X", "manual", observed_at=T0).fingerprints
    runtime.stop()

    report = runtime.scheduler.run_once(now=T0 + timedelta(seconds=10))

    assert report.due == 0
    assert report.claimed == 0
    assert report.errors == 0
    assert target.calls == []
    assert runtime.store.get(key).state == JobState.DEBOUNCING
    runtime.scheduler.start()
    assert not runtime.scheduler.running
