"""Configuration management for relayd."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class RelaydSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    home: Path = Field(default=Path("~/.relayd"), validation_alias="RELAYD_HOME")
    config_path: Path | None = Field(default=None, validation_alias="RELAYD_CONFIG_PATH")
    state_path: Path | None = Field(default=None, validation_alias="RELAYD_STATE_PATH")
    profiles_path: Path | None = Field(default=None, validation_alias="RELAYD_PROFILES_PATH")
    worker_path: str | None = Field(default=None, validation_alias="WORKER_PATH")
    transcripts_path: Path = Field(
        default=Path("~/.claude/projects"), validation_alias="WORKER_TRANSCRIPTS_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="RELAYD_LOG_LEVEL")
    notify_channels: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="RELAYD_NOTIFY_CHANNELS"
    )
    fallback_threshold: int = Field(default=2, validation_alias="RELAYD_FALLBACK_THRESHOLD")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "RELAYD_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("notify_channels", mode="before")
    @classmethod
    def _parse_notify_channels(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        raise TypeError("RELAYD_NOTIFY_CHANNELS must be a list or a comma-separated string")

    @field_validator("fallback_threshold")
    @classmethod
    def _validate_fallback_threshold(cls, value: int) -> int:
        if value < 1:
            raise ValueError("RELAYD_FALLBACK_THRESHOLD must be >= 1")
        return value

    @property
    def resolved_config_path(self) -> Path:
        return self.config_path or self.home / "daemon.yaml"

    @property
    def resolved_state_path(self) -> Path:
        return self.state_path or self.home / "state.json"

    @property
    def resolved_profiles_path(self) -> Path:
        return self.profiles_path or self.home / "profiles"


@lru_cache(maxsize=1)
def get_settings() -> RelaydSettings:
    """Return cached settings instance."""

    settings = RelaydSettings()
    settings.home = settings.home.expanduser().resolve()
    settings.transcripts_path = settings.transcripts_path.expanduser().resolve()
    if settings.config_path is not None:
        settings.config_path = settings.config_path.expanduser().resolve()
    if settings.state_path is not None:
        settings.state_path = settings.state_path.expanduser().resolve()
    if settings.profiles_path is not None:
        settings.profiles_path = settings.profiles_path.expanduser().resolve()
    return settings


__all__ = ["RelaydSettings", "get_settings"]
