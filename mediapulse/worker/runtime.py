from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from sqlalchemy.orm import Session, sessionmaker

from mediapulse.core.config import Settings, get_settings
from mediapulse.db.session import get_session_factory
from mediapulse.dispatch.service import Dispatcher
from mediapulse.jobs.correlator import Correlator
from mediapulse.jobs.store import JobStore
from mediapulse.targets.base import RescanTarget
from mediapulse.targets.registry import build_targets
from mediapulse.triggers.service import TriggerService
from mediapulse.triggers.watcher import NotifyWatcher
from mediapulse.webhooks.service import WebhookNotifier
from mediapulse.worker.scheduler import SchedulerLoop


@dataclass
class Runtime:
    settings: Settings
    store: JobStore
    dispatcher: Dispatcher
    triggers: TriggerService
    scheduler: SchedulerLoop
    watcher: NotifyWatcher

    def start(self) -> None:
        if self.settings.scheduler_enabled:
            self.scheduler.start()
        self.watcher.start()

    def stop(self) -> None:
        self.watcher.stop()
        self.scheduler.stop()


def build_runtime(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    targets: Mapping[str, RescanTarget] | None = None,
    notifier: WebhookNotifier | None = None,
) -> Runtime:
    """Wire the store, ingestion, dispatch and scheduling services around one database."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    resolved_targets = dict(targets) if targets is not None else build_targets(settings)

    store = JobStore(settings=settings, session_factory=session_factory, target_names=list(resolved_targets))
    dispatcher = Dispatcher(
        settings=settings,
        store=store,
        targets=resolved_targets,
        notifier=notifier or WebhookNotifier.from_settings(settings),
    )
    trigger_service = TriggerService(
        settings=settings,
        session_factory=session_factory,
        correlator=Correlator(settings=settings, store=store),
    )
    return Runtime(
        settings=settings,
        store=store,
        dispatcher=dispatcher,
        triggers=trigger_service,
        scheduler=SchedulerLoop(settings=settings, store=store, dispatcher=dispatcher),
        watcher=NotifyWatcher(settings=settings, service=trigger_service),
    )
