from mediapulse.triggers.payloads import TriggerPayloadError, extract_paths
from mediapulse.triggers.service import EmitResult, IngestResult, TriggerService, TriggerSourceNotFoundError
from mediapulse.triggers.watcher import NotifyHandler, NotifyWatcher

__all__ = [
    "EmitResult",
    "IngestResult",
    "NotifyHandler",
    "NotifyWatcher",
    "TriggerPayloadError",
    "TriggerService",
    "TriggerSourceNotFoundError",
    "extract_paths",
]
