from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from mediapulse.db.models import ChangeKind


@dataclass(frozen=True)
class TriggerEvent:
    source_id: str
    raw_path: str
    observed_at: datetime
    kind: ChangeKind


@dataclass(frozen=True)
class ResolvedChange:
    canonical_path: str
    kind: ChangeKind
    observed_at: datetime


@dataclass(frozen=True)
class CompiledRewrite:
    prefix: str
    replacements: tuple[str, ...]
