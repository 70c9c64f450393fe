from __future__ import annotations

from datetime import datetime, timezone

import pytest

from mediapulse.core.config import RewriteRule, TriggerSettings
from mediapulse.core.paths import PathRewriteError, fingerprint, normalize_path
from mediapulse.db.models import ChangeKind
from mediapulse.resolver.service import PathResolver
from mediapulse.resolver.types import TriggerEvent


@pytest.mark.parametrize(
    "raw_path",
    [
        "/media/tv/Show/S01/e01.mkv",
        "/media/tv/Show/./S01/e01.mkv",
        "/media/tv/Show/Extras/../S01/e01.mkv",
        "//media//tv/Show/S01/e01.mkv",
        "\\media\\tv\\Show\\S01\\e01.mkv",
        "/media/tv/Show/S01/e01.mkv/",
    ],
)
def test_equivalent_spellings_share_one_fingerprint(raw_path: str) -> None:
    assert normalize_path(raw_path) == "/media/tv/Show/S01/e01.mkv"
    assert fingerprint(raw_path) == fingerprint("/media/tv/Show/S01/e01.mkv")


def test_distinct_paths_have_distinct_fingerprints() -> None:
    assert fingerprint("/media/tv/a") != fingerprint("/media/tv/b")
    assert len(fingerprint("/media/tv/a")) == 64


@pytest.mark.parametrize("raw_path", ["", "   ", "../escape", "nested/../../escape", "/media/\x00bad"])
def test_normalize_path_rejects_unusable_input(raw_path: str) -> None:
    with pytest.raises(PathRewriteError):
        normalize_path(raw_path)


def _resolver() -> PathResolver:
    return PathResolver(
        {
            "sonarr": TriggerSettings(
                type="sonarr",
                rewrites=[
                    RewriteRule(from_prefix="/downloads/tv", to="/media/tv"),
                    RewriteRule(from_prefix="/downloads", to=["/mnt/a/downloads", "/mnt/b/downloads"]),
                ],
                excludes=["*.part", "/downloads/tv/.trash/*"],
            ),
            "manual": TriggerSettings(type="manual"),
        }
    )


def test_first_matching_rule_rewrites_prefix() -> None:
    resolver = _resolver()
    assert resolver.resolve("/downloads/tv/Show/S01/e01.mkv", "sonarr") == {"/media/tv/Show/S01/e01.mkv"}


def test_prefix_match_is_segment_aware() -> None:
    resolver = _resolver()
    # "/downloads/tvshows" is not under "/downloads/tv", so the second rule applies
    assert resolver.resolve("/downloads/tvshows/x.mkv", "sonarr") == {
        "/mnt/a/downloads/tvshows/x.mkv",
        "/mnt/b/downloads/tvshows/x.mkv",
    }


def test_dot_segments_are_resolved_before_matching() -> None:
    resolver = _resolver()
    assert resolver.resolve("/downloads/movies/../tv/Show", "sonarr") == {"/media/tv/Show"}


def test_unmatched_path_is_dropped() -> None:
    assert _resolver().resolve("/elsewhere/file.mkv", "sonarr") == set()


def test_excluded_paths_are_dropped() -> None:
    resolver = _resolver()
    assert resolver.resolve("/downloads/tv/Show/e01.mkv.part", "sonarr") == set()
    assert resolver.resolve("/downloads/tv/.trash/e01.mkv", "sonarr") == set()


def test_unknown_source_and_relative_paths_are_dropped() -> None:
    resolver = _resolver()
    assert resolver.resolve("/downloads/tv/Show", "unknown") == set()
    assert resolver.resolve("relative/path.mkv", "manual") == set()
    assert not resolver.knows("unknown")


def test_default_rules_keep_absolute_paths() -> None:
    assert _resolver().resolve("/media/movies/Film (2020)/", "manual") == {"/media/movies/Film (2020)"}


def test_resolve_event_fans_out_with_event_metadata() -> None:
    observed_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    changes = _resolver().resolve_event(
        TriggerEvent(
            source_id="sonarr",
            raw_path="/downloads/music/album",
            observed_at=observed_at,
            kind=ChangeKind.CREATED,
        )
    )
    assert [change.canonical_path for change in changes] == [
        "/mnt/a/downloads/music/album",
        "/mnt/b/downloads/music/album",
    ]
    assert all(change.kind == ChangeKind.CREATED and change.observed_at == observed_at for change in changes)
