from __future__ import annotations

from fastapi import Request

from mediapulse.worker.runtime import Runtime, build_runtime


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        runtime = build_runtime()
        request.app.state.runtime = runtime
    return runtime
