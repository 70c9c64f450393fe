from mediapulse.targets.base import BackendError, RescanTarget
from mediapulse.targets.command import CommandTarget
from mediapulse.targets.jellyfin import JellyfinTarget
from mediapulse.targets.plex import PlexTarget
from mediapulse.targets.registry import build_targets

__all__ = [
    "BackendError",
    "RescanTarget",
    "CommandTarget",
    "JellyfinTarget",
    "PlexTarget",
    "build_targets",
]
