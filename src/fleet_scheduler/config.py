"""Configuration management for the fleet scheduler."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_BACKEND_CHAIN: tuple[str, ...] = ("codex", "copilot", "claude")
DEFAULT_AUTO_RESOLVABLE_LOCK_FILES: tuple[str, ...] = (
    "pnpm-lock.yaml",
    "package-lock.json",
    "yarn.lock",
    "bun.lockb",
    "go.sum",
    "Cargo.lock",
    "poetry.lock",
    "uv.lock",
    "Pipfile.lock",
    "Gemfile.lock",
    "composer.lock",
)


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


class FleetSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    registry_path: Path = Field(
        default=Path("./state/session-registry.json"), validation_alias="FLEET_REGISTRY_PATH"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="FLEET_PROFILE_PATHS"
    )
    work_dir: Path = Field(default=Path("."), validation_alias="FLEET_WORK_DIR")
    log_level: str = Field(default="INFO", validation_alias="FLEET_LOG_LEVEL")

    default_timeout_seconds: float = Field(
        default=3600.0, validation_alias="FLEET_DEFAULT_TIMEOUT_SECONDS"
    )
    assessment_timeout_seconds: float = Field(
        default=300.0, validation_alias="FLEET_ASSESSMENT_TIMEOUT_SECONDS"
    )
    max_session_turns: int = Field(default=40, validation_alias="FLEET_MAX_SESSION_TURNS")
    session_max_age_seconds: float = Field(
        default=12 * 60 * 60, validation_alias="FLEET_SESSION_MAX_AGE_SECONDS"
    )
    turn_warning_threshold: int = Field(
        default=20, validation_alias="FLEET_TURN_WARNING_THRESHOLD"
    )
    privileged_task_key: str = Field(
        default="fleet-monitor", validation_alias="FLEET_PRIVILEGED_TASK_KEY"
    )
    privileged_refresh_turns: int = Field(
        default=5, validation_alias="FLEET_PRIVILEGED_REFRESH_TURNS"
    )
    failure_cooldown_seconds: float = Field(
        default=120.0, validation_alias="FLEET_FAILURE_COOLDOWN_SECONDS"
    )
    dedup_window_seconds: float = Field(
        default=300.0, validation_alias="FLEET_DEDUP_WINDOW_SECONDS"
    )
    backend_chain: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_BACKEND_CHAIN, validation_alias="FLEET_BACKEND_CHAIN"
    )
    default_backend: str = Field(default="codex", validation_alias="FLEET_DEFAULT_BACKEND")
    lock_files: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_AUTO_RESOLVABLE_LOCK_FILES, validation_alias="FLEET_LOCK_FILES"
    )
    suppress_node_warnings: bool = Field(
        default=True, validation_alias="FLEET_SUPPRESS_NODE_WARNINGS"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FLEET_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("FLEET_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("backend_chain", "lock_files", mode="before")
    @classmethod
    def _parse_csv(cls, value):
        if isinstance(value, str):
            return _split_csv(value)
        return value

    @field_validator("backend_chain")
    @classmethod
    def _normalize_chain(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        chain = tuple(dict.fromkeys(item.strip().lower() for item in value if item.strip()))
        if not chain:
            raise ValueError("FLEET_BACKEND_CHAIN must name at least one backend")
        return chain

    @field_validator("default_backend")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("max_session_turns", "turn_warning_threshold")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("turn limits must be >= 1")
        return value

    @field_validator(
        "default_timeout_seconds",
        "assessment_timeout_seconds",
        "session_max_age_seconds",
    )
    @classmethod
    def _validate_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be > 0 seconds")
        return value


@lru_cache(maxsize=1)
def get_settings() -> FleetSettings:
    """Return cached settings instance."""

    settings = FleetSettings()
    settings.registry_path = settings.registry_path.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    settings.work_dir = settings.work_dir.expanduser().resolve()
    return settings


__all__ = [
    "DEFAULT_AUTO_RESOLVABLE_LOCK_FILES",
    "DEFAULT_BACKEND_CHAIN",
    "FleetSettings",
    "get_settings",
]
