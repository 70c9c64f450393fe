from __future__ import annotations

import fnmatch
import logging
import posixpath
import re
from typing import Mapping

from mediapulse.core.config import Settings, TriggerSettings
from mediapulse.core.paths import PathRewriteError, is_within, normalize_path, rebase
from mediapulse.resolver.types import CompiledRewrite, ResolvedChange, TriggerEvent

logger = logging.getLogger(__name__)


class PathResolver:
    """Maps source-relative paths to canonical library paths.

    Rules are tried in configuration order and the first whose prefix contains the
    path wins; a rule with several replacements fans one path out to every mount.
    Resolution never touches the filesystem.
    """

    def __init__(self, triggers: Mapping[str, TriggerSettings]):
        self._rules: dict[str, tuple[CompiledRewrite, ...]] = {}
        self._excludes: dict[str, re.Pattern[str] | None] = {}
        for source_id, trigger in triggers.items():
            self._rules[source_id] = tuple(
                CompiledRewrite(
                    prefix=normalize_path(rule.from_prefix),
                    replacements=tuple(normalize_path(target) for target in rule.to),
                )
                for rule in trigger.rewrites
            )
            patterns = [fnmatch.translate(pattern) for pattern in trigger.excludes if pattern.strip()]
            self._excludes[source_id] = re.compile("|".join(patterns)) if patterns else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PathResolver":
        return cls(settings.triggers)

    def knows(self, source_id: str) -> bool:
        return source_id in self._rules

    def _is_excluded(self, source_id: str, path: str) -> bool:
        pattern = self._excludes.get(source_id)
        if pattern is None:
            return False
        return bool(pattern.match(path) or pattern.match(posixpath.basename(path)))

    def resolve(self, raw_path: str, source_id: str) -> set[str]:
        rules = self._rules.get(source_id)
        if rules is None:
            logger.info("Dropping change from unknown source %s: %s", source_id, raw_path)
            return set()

        try:
            normalized = normalize_path(raw_path)
        except PathRewriteError as exc:
            logger.info("Dropping unresolvable path from %s: %s", source_id, exc)
            return set()

        if self._is_excluded(source_id, normalized):
            logger.debug("Dropping excluded path from %s: %s", source_id, normalized)
            return set()

        for rule in rules:
            if not is_within(normalized, rule.prefix):
                continue
            resolved: set[str] = set()
            for replacement in rule.replacements:
                try:
                    resolved.add(rebase(normalized, rule.prefix, replacement))
                except PathRewriteError as exc:
                    logger.info("Dropping rewrite of %s to %s: %s", normalized, replacement, exc)
            return resolved

        logger.info("No rewrite rule for %s matched %s", source_id, normalized)
        return set()

    def resolve_event(self, event: TriggerEvent) -> list[ResolvedChange]:
        return [
            ResolvedChange(canonical_path=path, kind=event.kind, observed_at=event.observed_at)
            for path in sorted(self.resolve(event.raw_path, event.source_id))
        ]
