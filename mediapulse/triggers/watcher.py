from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from watchdog.events import (
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer

from mediapulse.core.config import Settings
from mediapulse.db.models import ChangeKind
from mediapulse.jobs.store import JobConflictError
from mediapulse.triggers.service import TriggerService

logger = logging.getLogger(__name__)


def _as_text(path: str | bytes) -> str:
    return path.decode() if isinstance(path, bytes) else path


class NotifyHandler(FileSystemEventHandler):
    """Forwards filesystem events from one ``notify`` source into trigger ingestion."""

    def __init__(self, source_id: str, service: TriggerService):
        super().__init__()
        self.source_id = source_id
        self.service = service

    def _emit(self, path: str | bytes, kind: ChangeKind) -> None:
        try:
            self.service.emit(_as_text(path), self.source_id, kind)
        except (SQLAlchemyError, JobConflictError):
            # the observer thread must survive; the next event for the path is admitted again
            logger.exception("Failed to admit %s event for %s", kind.value, _as_text(path))

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        # directory mtime changes duplicate the child event
        if isinstance(event, DirModifiedEvent):
            return
        self._emit(event.src_path, ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.DELETED)
        if isinstance(event, FileSystemMovedEvent):
            self._emit(event.dest_path, ChangeKind.RENAMED)


class NotifyWatcher:
    """Owns one watchdog observer scheduling every ``notify`` source."""

    def __init__(self, settings: Settings, service: TriggerService, observer_cls=Observer):
        self._settings = settings
        self._service = service
        self._observer_cls = observer_cls
        self._observer = None

    def sources(self) -> dict[str, list[str]]:
        return {
            source_id: [str(path) for path in trigger.paths]
            for source_id, trigger in self._settings.triggers.items()
            if trigger.type == "notify"
        }

    def start(self) -> bool:
        sources = self.sources()
        if not sources or self._observer is not None:
            return False

        observer = self._observer_cls()
        for source_id, paths in sources.items():
            handler = NotifyHandler(source_id, self._service)
            recursive = self._settings.triggers[source_id].recursive
            for path in paths:
                observer.schedule(handler, path, recursive=recursive)
                logger.info("Watching %s for source %s", path, source_id)
        observer.daemon = True
        observer.start()
        self._observer = observer
        return True

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=timeout)
        self._observer = None
