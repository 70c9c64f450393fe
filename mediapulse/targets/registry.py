from __future__ import annotations

from mediapulse.core.config import (
    CommandTargetSettings,
    JellyfinTargetSettings,
    PlexTargetSettings,
    Settings,
)
from mediapulse.targets.base import RescanTarget
from mediapulse.targets.command import CommandTarget
from mediapulse.targets.jellyfin import JellyfinTarget
from mediapulse.targets.plex import PlexTarget


def build_targets(settings: Settings) -> dict[str, RescanTarget]:
    targets: dict[str, RescanTarget] = {}
    for name, config in settings.targets.items():
        timeout = settings.timeout_for(name)
        if isinstance(config, PlexTargetSettings):
            targets[name] = PlexTarget(url=config.url, token=config.token, timeout_seconds=timeout)
        elif isinstance(config, JellyfinTargetSettings):
            targets[name] = JellyfinTarget(url=config.url, token=config.token, timeout_seconds=timeout)
        elif isinstance(config, CommandTargetSettings):
            targets[name] = CommandTarget(argv=config.argv, timeout_seconds=timeout)
        else:
            raise ValueError(f"Unsupported target type for {name}")
    return targets
