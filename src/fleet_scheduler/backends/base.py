"""Backend adapter interface shared by every execution backend."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Mapping

SessionReadyCallback = Callable[[str, str], Awaitable[None]]


class BackendError(RuntimeError):
    """Base class for backend adapter errors."""


class BackendNotFoundError(BackendError):
    """Raised when a backend CLI executable cannot be located."""


class BackendCallError(BackendError):
    """Raised when a delegated backend call does not produce a usable response."""


@dataclass(slots=True)
class SessionOptions:
    """Per-call knobs forwarded from the pool to an adapter.

    ``ignore_cooldown`` is tri-state: ``None`` means the caller did not set it.
    """

    backend: str | None = None
    ignore_cooldown: bool | None = None
    on_session_ready: SessionReadyCallback | None = None
    failover: bool = True
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SessionResult:
    """Outcome of a single launch or resume call."""

    success: bool
    backend: str
    output: str = ""
    error: str | None = None
    session_id: str | None = None
    poisoned: bool = False
    timed_out: bool = False

    @classmethod
    def failure(
        cls,
        backend: str,
        error: str,
        *,
        session_id: str | None = None,
        poisoned: bool = False,
        timed_out: bool = False,
        output: str = "",
    ) -> "SessionResult":
        return cls(
            success=False,
            backend=backend,
            output=output,
            error=error,
            session_id=session_id,
            poisoned=poisoned,
            timed_out=timed_out,
        )


class SessionReadyNotifier:
    """Invoke an ``on_session_ready`` callback at most once."""

    def __init__(self, callback: SessionReadyCallback | None, backend: str) -> None:
        self._callback = callback
        self._backend = backend
        self.session_id: str | None = None

    @property
    def fired(self) -> bool:
        return self.session_id is not None

    async def __call__(self, session_id: str) -> None:
        if self.session_id is not None or not session_id:
            return
        self.session_id = session_id
        if self._callback is not None:
            await self._callback(session_id, self._backend)


class BackendAdapter(abc.ABC):
    """Uniform launch/resume contract over one execution backend."""

    name: str = "generic"
    supports_resume: bool = True

    def __init__(self, *, poisoned_patterns: Iterable[str] | None = None) -> None:
        patterns = poisoned_patterns if poisoned_patterns is not None else self.default_poisoned_patterns()
        self._poisoned_patterns = tuple(pattern.lower() for pattern in patterns if pattern)

    @classmethod
    def default_poisoned_patterns(cls) -> tuple[str, ...]:
        return ()

    @property
    def poisoned_patterns(self) -> tuple[str, ...]:
        return self._poisoned_patterns

    def is_poisoned(self, error: str | None) -> bool:
        """Return True when a resume error means the remote session is permanently unusable."""

        if not error:
            return False
        lowered = error.lower()
        return any(pattern in lowered for pattern in self._poisoned_patterns)

    @abc.abstractmethod
    async def launch(
        self,
        prompt: str,
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
    ) -> SessionResult:
        """Start a fresh session and run ``prompt`` in it."""

    @abc.abstractmethod
    async def resume(
        self,
        session_id: str,
        prompt: str,
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
    ) -> SessionResult:
        """Continue ``session_id`` with a follow-up ``prompt``."""


__all__ = [
    "BackendAdapter",
    "BackendCallError",
    "BackendError",
    "BackendNotFoundError",
    "SessionOptions",
    "SessionReadyCallback",
    "SessionReadyNotifier",
    "SessionResult",
]
