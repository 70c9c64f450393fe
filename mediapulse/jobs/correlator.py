from __future__ import annotations

import logging
from datetime import datetime, timedelta

from mediapulse.core.config import Settings
from mediapulse.core.paths import fingerprint, normalize_path
from mediapulse.db.models import ChangeKind, JobState
from mediapulse.jobs.store import JobConflictError, JobStore, as_utc
from mediapulse.resolver.types import ResolvedChange

logger = logging.getLogger(__name__)

MAX_ADMIT_ATTEMPTS = 8


class Correlator:
    """Coalesces resolved changes into one active Job per fingerprint.

    A new path opens a Job whose debounce deadline is ``observed_at + window``; further
    changes inside the window push the deadline out to the latest ``observed_at + window``.
    Changes that land while the Job is already being dispatched are recorded as a
    follow-up and become a fresh Job once the in-flight one is terminal.

    Every step is a guarded store write. When a write loses a race (the Job moved on
    between read and write) the decision is re-taken against the new state.
    """

    def __init__(self, settings: Settings, store: JobStore):
        self._settings = settings
        self._store = store

    def _window(self) -> timedelta:
        return timedelta(seconds=self._settings.debounce_window_seconds)

    def admit(
        self,
        canonical_path: str,
        observed_at: datetime,
        kind: ChangeKind = ChangeKind.MODIFIED,
    ) -> str:
        path = normalize_path(canonical_path)
        key = fingerprint(path)
        seen_at = as_utc(observed_at)

        for _ in range(MAX_ADMIT_ATTEMPTS):
            active = self._store.get_active(key)
            if active is None:
                created = self._store.create_if_absent(
                    canonical_path=path,
                    kind=kind,
                    observed_at=seen_at,
                    debounce_deadline=seen_at + self._window(),
                )
                if created is not None:
                    logger.debug("Opened job %s for %s (due %s)", created.id, path, created.debounce_deadline)
                    return key
                continue

            if active.state in (JobState.PENDING, JobState.DEBOUNCING):
                if self._store.extend_debounce(active.id, observed_at=seen_at, kind=kind):
                    logger.debug("Coalesced change into job %s for %s", active.id, path)
                    return key
                continue

            if active.state in (JobState.DISPATCHING, JobState.PARTIALLY_FAILED):
                if self._store.record_followup(active.id, observed_at=seen_at, kind=kind):
                    logger.debug("Recorded follow-up on in-flight job %s for %s", active.id, path)
                    return key
                continue

        raise JobConflictError(f"Could not admit change for {path}: job state kept moving")

    def admit_change(self, change: ResolvedChange) -> str:
        return self.admit(change.canonical_path, change.observed_at, change.kind)
