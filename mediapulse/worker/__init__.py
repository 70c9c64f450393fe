from mediapulse.worker.scheduler import SchedulerLoop, TickReport

__all__ = [
    "SchedulerLoop",
    "TickReport",
]
