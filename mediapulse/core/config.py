from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)


class RewriteRule(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    from_prefix: str = Field(alias="from", min_length=1)
    to: list[str] = Field(min_length=1)

    @field_validator("to", mode="before")
    @classmethod
    def _coerce_targets(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        return value


def _identity_rewrites() -> list[RewriteRule]:
    return [RewriteRule(from_prefix="/", to=["/"])]


class TriggerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["manual", "sonarr", "radarr", "notify"] = "manual"
    rewrites: list[RewriteRule] = Field(default_factory=_identity_rewrites)
    excludes: list[str] = Field(default_factory=list)
    paths: list[Path] = Field(default_factory=list)
    recursive: bool = True

    @model_validator(mode="after")
    def _validate_notify_paths(self) -> "TriggerSettings":
        if self.type == "notify" and not self.paths:
            raise ValueError("notify triggers require at least one path")
        if self.type != "notify" and self.paths:
            raise ValueError("paths is only supported for notify triggers")
        return self


class _TargetBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout_seconds: PositiveFloat | None = None


class PlexTargetSettings(_TargetBase):
    type: Literal["plex"]
    url: str
    token: str


class JellyfinTargetSettings(_TargetBase):
    type: Literal["jellyfin", "emby"]
    url: str
    token: str


class CommandTargetSettings(_TargetBase):
    type: Literal["command"]
    argv: list[str] = Field(min_length=1)


TargetSettings = Annotated[
    Union[PlexTargetSettings, JellyfinTargetSettings, CommandTargetSettings],
    Field(discriminator="type"),
]


class WebhookSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["discord"] = "discord"
    url: str = Field(min_length=1)
    username: str = "MediaPulse"
    timeout_seconds: PositiveFloat = 10.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEDIAPULSE_",
        env_nested_delimiter="__",
        env_file=".env",
        toml_file="mediapulse.toml",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "MediaPulse"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 2875
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    debounce_window_seconds: NonNegativeFloat = 10.0
    scheduler_tick_seconds: PositiveFloat = 1.0
    scheduler_enabled: bool = True

    retry_base_seconds: PositiveFloat = 2.0
    retry_max_seconds: PositiveFloat = 600.0
    max_attempts: PositiveInt = 5
    target_timeout_seconds: PositiveFloat = 30.0
    dispatch_lease_seconds: PositiveInt = 300
    dispatch_concurrency: PositiveInt = 4
    retention_seconds: PositiveInt = 10 * 24 * 3600

    check_path: bool = False
    check_path_retry_seconds: PositiveFloat = 30.0

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200

    triggers: dict[str, TriggerSettings] = Field(default_factory=dict)
    targets: dict[str, TargetSettings] = Field(default_factory=dict)
    webhooks: dict[str, WebhookSettings] = Field(default_factory=dict)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.debounce_window_seconds > 0 and self.scheduler_tick_seconds >= self.debounce_window_seconds:
            raise ValueError("scheduler_tick_seconds must be smaller than debounce_window_seconds")

        if self.retry_max_seconds < self.retry_base_seconds:
            raise ValueError("retry_max_seconds must be greater than or equal to retry_base_seconds")

        longest_timeout = max(
            [self.target_timeout_seconds]
            + [target.timeout_seconds for target in self.targets.values() if target.timeout_seconds is not None]
        )
        if self.dispatch_lease_seconds <= longest_timeout:
            raise ValueError("dispatch_lease_seconds must be greater than every target timeout")

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        for source_id in self.triggers:
            if not source_id.strip():
                raise ValueError("Trigger source ids cannot be blank")
        for name in self.targets:
            if not name.strip():
                raise ValueError("Target names cannot be blank")

        self.log_level = self.log_level.upper().strip()
        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "mediapulse.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    def timeout_for(self, target_name: str) -> float:
        target = self.targets.get(target_name)
        if target is not None and target.timeout_seconds is not None:
            return float(target.timeout_seconds)
        return float(self.target_timeout_seconds)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
