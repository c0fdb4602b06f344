from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from fleet_scheduler.config import (
    DEFAULT_AUTO_RESOLVABLE_LOCK_FILES,
    DEFAULT_BACKEND_CHAIN,
    FleetSettings,
    get_settings,
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("FLEET_") or key == "CHROMA_PERSIST_PATH":
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults() -> None:
    settings = FleetSettings()

    assert settings.backend_chain == DEFAULT_BACKEND_CHAIN
    assert settings.default_backend == "codex"
    assert settings.lock_files == DEFAULT_AUTO_RESOLVABLE_LOCK_FILES
    assert settings.profile_paths == (Path("profiles"),)
    assert settings.privileged_task_key == "fleet-monitor"
    assert settings.log_level == "INFO"


def test_backend_chain_from_csv(monkeypatch) -> None:
    monkeypatch.setenv("FLEET_BACKEND_CHAIN", " Claude, codex ,,CLAUDE ")
    monkeypatch.setenv("FLEET_DEFAULT_BACKEND", " Claude ")

    settings = FleetSettings()

    assert settings.backend_chain == ("claude", "codex")
    assert settings.default_backend == "claude"


def test_empty_backend_chain_rejected(monkeypatch) -> None:
    monkeypatch.setenv("FLEET_BACKEND_CHAIN", " , ")

    with pytest.raises(ValidationError):
        FleetSettings()


def test_profile_paths_split_on_path_separator(monkeypatch, tmp_path: Path) -> None:
    first = tmp_path / "a"
    second = tmp_path / "b"
    monkeypatch.setenv("FLEET_PROFILE_PATHS", f"{first}{os.pathsep} {second} ")

    settings = FleetSettings()

    assert settings.profile_paths == (first, second)


def test_lock_files_from_csv(monkeypatch) -> None:
    monkeypatch.setenv("FLEET_LOCK_FILES", "yarn.lock, go.sum")

    assert FleetSettings().lock_files == ("yarn.lock", "go.sum")


def test_log_level_normalized_and_validated(monkeypatch) -> None:
    monkeypatch.setenv("FLEET_LOG_LEVEL", "debug")
    assert FleetSettings().log_level == "DEBUG"

    monkeypatch.setenv("FLEET_LOG_LEVEL", "verbose")
    with pytest.raises(ValidationError):
        FleetSettings()


def test_non_positive_durations_rejected(monkeypatch) -> None:
    monkeypatch.setenv("FLEET_ASSESSMENT_TIMEOUT_SECONDS", "0")

    with pytest.raises(ValidationError):
        FleetSettings()


def test_field_names_accepted_directly(tmp_path: Path) -> None:
    settings = FleetSettings(registry_path=tmp_path / "registry.json", max_session_turns=8)

    assert settings.registry_path == tmp_path / "registry.json"
    assert settings.max_session_turns == 8


def test_get_settings_resolves_paths(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("FLEET_REGISTRY_PATH", "state/registry.json")

    settings = get_settings()

    assert settings.registry_path == (tmp_path / "state" / "registry.json").resolve()
    assert settings.work_dir == tmp_path.resolve()
    assert get_settings() is settings


def test_node_warning_suppression_opt_out(monkeypatch) -> None:
    assert FleetSettings().suppress_node_warnings is True

    monkeypatch.setenv("FLEET_SUPPRESS_NODE_WARNINGS", "0")

    assert FleetSettings().suppress_node_warnings is False
