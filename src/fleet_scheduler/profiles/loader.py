"""Backend profile loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import BackendProfile


class ProfileLoadError(RuntimeError):
    """Raised when one or more profile files cannot be parsed."""


class ProfileLoader:
    """Loads backend profiles from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, BackendProfile]:
        """Load profiles from all configured search paths.

        Later search paths override earlier ones when backend ids collide. A
        YAML document may hold a single profile mapping or a list of them.
        """

        if not self._search_paths:
            return {}

        profiles: dict[str, BackendProfile] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                entries = document if isinstance(document, list) else [document]
                for entry in entries:
                    try:
                        profile = BackendProfile.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Profile validation error in {path}: {exc}")
                        continue
                    profiles[profile.id] = profile

        if errors:
            raise ProfileLoadError("; ".join(errors))

        return profiles

    def get(self, backend: str) -> BackendProfile:
        profiles = self.load_all()
        try:
            return profiles[backend.strip().lower()]
        except KeyError as exc:
            raise ProfileLoadError(f"Backend profile '{backend}' not found in search paths") from exc


__all__ = ["BackendProfile", "ProfileLoadError", "ProfileLoader"]
