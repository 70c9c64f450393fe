from mediapulse.dispatch.service import AttemptResult, DispatchResult, Dispatcher, backoff_delay

__all__ = [
    "AttemptResult",
    "DispatchResult",
    "Dispatcher",
    "backoff_delay",
]
