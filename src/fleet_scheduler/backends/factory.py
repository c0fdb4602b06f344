"""Build the backend-name -> adapter lookup used by the session pool."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Mapping

from ..profiles import BackendProfile
from .base import BackendAdapter, BackendNotFoundError
from .cli import ClaudeAdapter, CliBackendAdapter, CodexAdapter, CopilotAdapter

logger = logging.getLogger(__name__)

ADAPTER_TYPES: dict[str, type[CliBackendAdapter]] = {
    "codex": CodexAdapter,
    "claude": ClaudeAdapter,
    "copilot": CopilotAdapter,
    "generic": CliBackendAdapter,
}


def build_adapter(
    backend: str,
    profile: BackendProfile | None = None,
    *,
    suppress_node_warnings: bool = True,
) -> BackendAdapter:
    """Instantiate the adapter for ``backend``, applying profile overrides."""

    if profile is None:
        try:
            adapter_type = ADAPTER_TYPES[backend]
        except KeyError as exc:
            raise BackendNotFoundError(
                f"No adapter for backend '{backend}' and no profile describing it"
            ) from exc
        return adapter_type(suppress_node_warnings=suppress_node_warnings)

    adapter_type = ADAPTER_TYPES[profile.kind]
    if profile.kind == "generic" and not profile.executable:
        raise BackendNotFoundError(f"Generic backend '{profile.id}' needs an explicit executable")

    adapter = adapter_type(
        Path(profile.executable).expanduser() if profile.executable else None,
        launch_args=profile.launch_args or None,
        resume_args=profile.resume_args or None,
        env=profile.env,
        poisoned_patterns=profile.poisoned_patterns,
        supports_resume=profile.supports_resume,
        suppress_node_warnings=suppress_node_warnings,
    )
    # Profile ids name chain entries; they may differ from the adapter's default name.
    adapter.name = profile.id
    return adapter


def build_adapters(
    backends: Iterable[str],
    profiles: Mapping[str, BackendProfile] | None = None,
    *,
    suppress_node_warnings: bool = True,
) -> dict[str, BackendAdapter]:
    """Return adapters for every backend whose CLI is available.

    Backends that cannot be constructed are skipped with a warning so a host
    missing one CLI still serves the rest of the chain.
    """

    profiles = profiles or {}
    adapters: dict[str, BackendAdapter] = {}
    for backend in backends:
        try:
            adapters[backend] = build_adapter(
                backend,
                profiles.get(backend),
                suppress_node_warnings=suppress_node_warnings,
            )
        except BackendNotFoundError as exc:
            logger.warning(
                "Backend unavailable",
                extra={"backend": backend, "error": str(exc)},
            )
    return adapters


__all__ = ["ADAPTER_TYPES", "build_adapter", "build_adapters"]
