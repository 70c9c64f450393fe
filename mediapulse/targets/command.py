from __future__ import annotations

import subprocess
from typing import Sequence

from mediapulse.targets.base import BackendError


class CommandTarget:
    """Runs a local program; ``{path}`` in any argument is replaced with the canonical path."""

    def __init__(self, *, argv: Sequence[str], timeout_seconds: float):
        if not argv:
            raise ValueError("argv cannot be empty")
        self._argv = list(argv)
        self._timeout = timeout_seconds

    def trigger_rescan(self, canonical_path: str) -> None:
        command = [part.replace("{path}", canonical_path) for part in self._argv]
        try:
            result = subprocess.run(
                command,
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise BackendError(f"Command not found: {command[0]}", permanent=True) from exc
        except subprocess.TimeoutExpired as exc:
            raise BackendError(f"Command timed out after {self._timeout:g}s") from exc

        if result.returncode != 0:
            stderr = result.stderr.strip()
            stdout = result.stdout.strip()
            details = stderr or stdout or "command failed without output"
            raise BackendError(f"Command exited with {result.returncode}: {details[:500]}")
