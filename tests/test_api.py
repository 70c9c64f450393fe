from __future__ import annotations

import json
import os
from pathlib import Path

from fastapi.testclient import TestClient

import mediapulse.db.session as db_session_module
from mediapulse.api.app import create_app
from mediapulse.core.config import get_settings
from mediapulse.core.paths import fingerprint
from mediapulse.worker.runtime import build_runtime


class RecordingTarget:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def trigger_rescan(self, canonical_path: str) -> None:
        self.calls.append(canonical_path)


def setup_env(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["MEDIAPULSE_STATE_ROOT"] = state_root.as_posix()
    os.environ["MEDIAPULSE_DEBOUNCE_WINDOW_SECONDS"] = "10"
    os.environ["MEDIAPULSE_SCHEDULER_TICK_SECONDS"] = "0.5"
    os.environ["MEDIAPULSE_SCHEDULER_ENABLED"] = "false"
    os.environ["MEDIAPULSE_TRIGGERS"] = json.dumps(
        {
            "radarr": {"type": "radarr", "rewrites": [{"from": "/movies", "to": "/media/movies"}]},
            "manual": {"type": "manual"},
        }
    )
    os.environ.pop("MEDIAPULSE_DATABASE_URL", None)

    get_settings.cache_clear()
    db_session_module.reset_engine()


def _client_with_target(tmp_path: Path, target: RecordingTarget) -> TestClient:
    setup_env(tmp_path)
    client = TestClient(create_app())
    client.__enter__()
    client.app.state.runtime = build_runtime(get_settings(), targets={"plex": target})
    return client


def test_health_endpoint(tmp_path: Path) -> None:
    setup_env(tmp_path)
    with TestClient(create_app()) as client:
        response = client.get("/api/v1/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["service"] == "MediaPulse"
    assert payload["scheduler_running"] is False
    assert payload["sources"] == ["manual", "radarr"]


def test_trigger_creates_job_and_dispatch_runs_it(tmp_path: Path) -> None:
    target = RecordingTarget()
    client = _client_with_target(tmp_path, target)
    try:
        accepted = client.post(
            "/api/v1/triggers/radarr",
            json={
                "eventType": "Download",
                "movie": {"folderPath": "/movies/Film"},
                "movieFile": {"relativePath": "Film.mkv"},
            },
        )
        assert accepted.status_code == 202
        body = accepted.json()
        assert body["received"] == 1
        assert body["admitted"] == 1
        assert body["dropped"] == 0
        key = fingerprint("/media/movies/Film/Film.mkv")
        assert body["fingerprints"] == [key]

        job = client.get(f"/api/v1/jobs/fingerprint/{key}").json()
        assert job["state"] == "debouncing"
        assert job["last_kind"] == "created"
        assert [item["target_name"] for item in job["targets"]] == ["plex"]

        not_due = client.post(f"/api/v1/jobs/{job['id']}/dispatch")
        assert not_due.status_code == 409

        dispatched = client.post(f"/api/v1/jobs/{job['id']}/dispatch", params={"force": "true"})
        assert dispatched.status_code == 200
        assert dispatched.json()["state"] == "completed"
        assert dispatched.json()["attempted"] == ["plex"]
        assert target.calls == ["/media/movies/Film/Film.mkv"]

        again = client.post(f"/api/v1/jobs/{job['id']}/dispatch", params={"force": "true"})
        assert again.status_code == 409

        stats = client.get("/api/v1/stats").json()
        assert stats["total"] == 1
        assert stats["by_state"]["completed"] == 1
        assert stats["targets"]["plex"]["succeeded"] == 1
        assert stats["triggers"]["radarr"]["admitted"] == 1
    finally:
        client.app.state.runtime.stop()
        client.__exit__(None, None, None)


def test_trigger_errors_map_to_status_codes(tmp_path: Path) -> None:
    setup_env(tmp_path)
    with TestClient(create_app()) as client:
        assert client.post("/api/v1/triggers/unknown", json={"path": "/media/a"}).status_code == 404
        assert client.post("/api/v1/triggers/manual", json={"paths": []}).status_code == 422
        assert client.post("/api/v1/triggers/radarr", json={"eventType": "Test"}).json()["received"] == 0

        dropped = client.post("/api/v1/triggers/radarr", json={"eventType": "MovieDelete", "movie": {"folderPath": "/tv/x"}})
        assert dropped.status_code == 202
        assert dropped.json()["dropped"] == 1


def test_job_listing_and_lookup(tmp_path: Path) -> None:
    setup_env(tmp_path)
    with TestClient(create_app()) as client:
        for name in ("a", "b", "c"):
            client.post("/api/v1/triggers/manual", json={"path": f"/media/{name}"})

        first = client.get("/api/v1/jobs", params={"limit": 2}).json()
        assert len(first["items"]) == 2
        second = client.get("/api/v1/jobs", params={"limit": 2, "cursor": first["next_cursor"]}).json()
        assert len(second["items"]) == 1
        assert second["next_cursor"] is None

        filtered = client.get("/api/v1/jobs", params={"state": "completed"}).json()
        assert filtered["items"] == []

        assert client.get("/api/v1/jobs", params={"cursor": "missing"}).status_code == 422
        assert client.get("/api/v1/jobs/missing").status_code == 404
        assert client.get(f"/api/v1/jobs/fingerprint/{fingerprint('/nope')}").status_code == 404
        assert client.post("/api/v1/jobs/missing/dispatch").status_code == 404


def test_scheduler_tick_endpoint(tmp_path: Path) -> None:
    target = RecordingTarget()
    client = _client_with_target(tmp_path, target)
    try:
        response = client.post("/api/v1/scheduler/tick")
        assert response.status_code == 200
        report = response.json()
        assert report["claimed"] == 0
        assert report["errors"] == 0

        client.app.state.runtime.stop()
        stopped = client.post("/api/v1/scheduler/tick")
        assert stopped.status_code == 200
        assert stopped.json()["due"] == 0
    finally:
        client.app.state.runtime.stop()
        client.__exit__(None, None, None)
