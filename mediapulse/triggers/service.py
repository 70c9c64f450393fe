from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from mediapulse.core.config import Settings
from mediapulse.db.models import ChangeKind, TriggerSource
from mediapulse.jobs.correlator import Correlator
from mediapulse.jobs.store import as_utc
from mediapulse.resolver.service import PathResolver
from mediapulse.resolver.types import TriggerEvent
from mediapulse.triggers.payloads import extract_paths

logger = logging.getLogger(__name__)


class TriggerSourceNotFoundError(RuntimeError):
    pass


@dataclass(frozen=True)
class EmitResult:
    source_id: str
    raw_path: str
    fingerprints: tuple[str, ...]

    @property
    def dropped(self) -> bool:
        return not self.fingerprints


@dataclass
class IngestResult:
    source_id: str
    received: int = 0
    admitted: int = 0
    dropped: int = 0
    fingerprints: list[str] = field(default_factory=list)


class TriggerService:
    """Entry point for every trigger producer.

    A trigger is resolved to canonical paths and each path is admitted to the
    correlator. Nothing here waits on a backend: ingestion ends once the Job Store has
    recorded the change.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        correlator: Correlator,
        resolver: PathResolver | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._correlator = correlator
        self._resolver = resolver or PathResolver.from_settings(settings)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _require_source(self, source_id: str) -> str:
        trigger = self._settings.triggers.get(source_id)
        if trigger is None:
            raise TriggerSourceNotFoundError(f"Trigger source not found: {source_id}")
        return trigger.type

    def emit(
        self,
        raw_path: str,
        source_id: str,
        kind: ChangeKind = ChangeKind.MODIFIED,
        observed_at: datetime | None = None,
    ) -> EmitResult:
        self._require_source(source_id)
        event = TriggerEvent(
            source_id=source_id,
            raw_path=raw_path,
            observed_at=as_utc(observed_at) if observed_at is not None else self._now(),
            kind=kind,
        )
        changes = self._resolver.resolve_event(event)
        admitted: list[str] = []
        try:
            for change in changes:
                admitted.append(self._correlator.admit_change(change))
        finally:
            # paths admitted before a failure are still counted
            self._record(
                source_id,
                admitted=len(admitted),
                dropped=0 if changes else 1,
                seen_at=event.observed_at,
            )
        return EmitResult(source_id=source_id, raw_path=raw_path, fingerprints=tuple(admitted))

    def ingest_payload(self, source_id: str, body: Any, *, observed_at: datetime | None = None) -> IngestResult:
        trigger_type = self._require_source(source_id)
        result = IngestResult(source_id=source_id)
        for raw_path, kind in extract_paths(trigger_type, body):
            emitted = self.emit(raw_path, source_id, kind, observed_at)
            result.received += 1
            if emitted.dropped:
                result.dropped += 1
                continue
            result.admitted += len(emitted.fingerprints)
            for key in emitted.fingerprints:
                if key not in result.fingerprints:
                    result.fingerprints.append(key)
        if result.received == 0:
            logger.debug("Trigger from %s carried no paths", source_id)
        return result

    def _record(self, source_id: str, *, admitted: int, dropped: int, seen_at: datetime) -> None:
        values = {
            "received": TriggerSource.received + 1,
            "admitted": TriggerSource.admitted + admitted,
            "dropped": TriggerSource.dropped + dropped,
            "last_event_at": seen_at,
        }
        stmt = update(TriggerSource).where(TriggerSource.source_id == source_id).values(**values)
        with self._session_factory() as session:
            if session.execute(stmt).rowcount == 1:
                session.commit()
                return
            session.add(
                TriggerSource(
                    source_id=source_id,
                    received=1,
                    admitted=admitted,
                    dropped=dropped,
                    last_event_at=seen_at,
                )
            )
            try:
                session.commit()
                return
            except IntegrityError:
                session.rollback()
            # lost the insert race; the row exists now
            session.execute(stmt)
            session.commit()

    def get_counters(self) -> dict[str, dict[str, Any]]:
        counters: dict[str, dict[str, Any]] = {
            source_id: {"type": trigger.type, "received": 0, "admitted": 0, "dropped": 0, "last_event_at": None}
            for source_id, trigger in self._settings.triggers.items()
        }
        with self._session_factory() as session:
            for row in session.scalars(select(TriggerSource).order_by(TriggerSource.source_id.asc())).all():
                bucket = counters.setdefault(
                    row.source_id,
                    {"type": None, "received": 0, "admitted": 0, "dropped": 0, "last_event_at": None},
                )
                bucket.update(
                    received=row.received,
                    admitted=row.admitted,
                    dropped=row.dropped,
                    last_event_at=as_utc(row.last_event_at) if row.last_event_at else None,
                )
        return counters
