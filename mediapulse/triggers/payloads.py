from __future__ import annotations

import posixpath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from mediapulse.db.models import ChangeKind


class TriggerPayloadError(ValueError):
    pass


class _ArrModel(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class _MediaFile(_ArrModel):
    path: str | None = None
    relative_path: str | None = None
    previous_path: str | None = None


class _Series(_ArrModel):
    path: str | None = None


class _Movie(_ArrModel):
    folder_path: str | None = None
    path: str | None = None


class SonarrPayload(_ArrModel):
    event_type: str
    is_upgrade: bool = False
    series: _Series | None = None
    episode_file: _MediaFile | None = None
    deleted_files: list[_MediaFile] = Field(default_factory=list)
    renamed_episode_files: list[_MediaFile] = Field(default_factory=list)


class RadarrPayload(_ArrModel):
    event_type: str
    is_upgrade: bool = False
    movie: _Movie | None = None
    movie_file: _MediaFile | None = None
    deleted_files: list[_MediaFile] = Field(default_factory=list)
    renamed_movie_files: list[_MediaFile] = Field(default_factory=list)


class ManualPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str | None = None
    paths: list[str] = Field(default_factory=list)
    kind: ChangeKind = ChangeKind.MODIFIED

    @model_validator(mode="after")
    def _require_path(self) -> "ManualPayload":
        if not self.path and not self.paths:
            raise ValueError("path or paths is required")
        return self

    def all_paths(self) -> list[str]:
        return ([self.path] if self.path else []) + list(self.paths)


def _file_path(media_file: _MediaFile | None, folder: str | None) -> str | None:
    if media_file is None:
        return None
    if media_file.path:
        return media_file.path
    if media_file.relative_path and folder:
        return posixpath.join(folder, media_file.relative_path)
    return None


def _collect(
    event_type: str,
    *,
    is_upgrade: bool,
    folder: str | None,
    media_file: _MediaFile | None,
    deleted_files: list[_MediaFile],
    renamed_files: list[_MediaFile],
    file_delete_event: str,
    folder_delete_event: str,
) -> list[tuple[str, ChangeKind]]:
    changes: list[tuple[str, ChangeKind]] = []
    if event_type == "Download":
        path = _file_path(media_file, folder)
        if path:
            changes.append((path, ChangeKind.MODIFIED if is_upgrade else ChangeKind.CREATED))
        for deleted in deleted_files:
            deleted_path = _file_path(deleted, folder)
            if deleted_path:
                changes.append((deleted_path, ChangeKind.DELETED))
    elif event_type == "Rename":
        for renamed in renamed_files:
            if renamed.previous_path:
                changes.append((renamed.previous_path, ChangeKind.DELETED))
            path = _file_path(renamed, folder)
            if path:
                changes.append((path, ChangeKind.RENAMED))
        if not renamed_files and folder:
            changes.append((folder, ChangeKind.RENAMED))
    elif event_type == file_delete_event:
        path = _file_path(media_file, folder)
        if path:
            changes.append((path, ChangeKind.DELETED))
    elif event_type == folder_delete_event:
        if folder:
            changes.append((folder, ChangeKind.DELETED))
    return changes


def extract_paths(trigger_type: str, body: Any) -> list[tuple[str, ChangeKind]]:
    """Turn a webhook body into ``(raw_path, kind)`` pairs.

    Events that carry no path (``Test``, grabs, health checks) yield an empty list.
    """
    if not isinstance(body, dict):
        raise TriggerPayloadError("Trigger payload must be a JSON object")

    try:
        if trigger_type == "sonarr":
            sonarr = SonarrPayload.model_validate(body)
            return _collect(
                sonarr.event_type,
                is_upgrade=sonarr.is_upgrade,
                folder=sonarr.series.path if sonarr.series else None,
                media_file=sonarr.episode_file,
                deleted_files=sonarr.deleted_files,
                renamed_files=sonarr.renamed_episode_files,
                file_delete_event="EpisodeFileDelete",
                folder_delete_event="SeriesDelete",
            )
        if trigger_type == "radarr":
            radarr = RadarrPayload.model_validate(body)
            folder = None
            if radarr.movie is not None:
                folder = radarr.movie.folder_path or radarr.movie.path
            return _collect(
                radarr.event_type,
                is_upgrade=radarr.is_upgrade,
                folder=folder,
                media_file=radarr.movie_file,
                deleted_files=radarr.deleted_files,
                renamed_files=radarr.renamed_movie_files,
                file_delete_event="MovieFileDelete",
                folder_delete_event="MovieDelete",
            )
        if trigger_type in {"manual", "notify"}:
            manual = ManualPayload.model_validate(body)
            return [(path, manual.kind) for path in manual.all_paths()]
    except ValidationError as exc:
        raise TriggerPayloadError(f"Invalid {trigger_type} payload: {exc.errors(include_url=False)}") from exc

    raise TriggerPayloadError(f"Unsupported trigger type: {trigger_type}")
