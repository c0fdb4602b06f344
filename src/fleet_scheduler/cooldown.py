"""Per-backend cooldown windows and failover classification of backend errors."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence

from .ttl import TTLMap

DEFAULT_FAILURE_COOLDOWN = timedelta(seconds=120)

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "429",
    "rate limit",
    "rate_limit",
    "too many requests",
)
_GATEWAY_PATTERNS: tuple[str, ...] = (
    "gateway timeout",
    "504",
    "502",
    "bad gateway",
    "upstream timeout",
    "upstream connect",
    "upstream request timeout",
)
_NO_BACKEND_PATTERNS: tuple[str, ...] = (
    "no backend available",
    "no sdk available",
)
_COOLDOWN_PATTERNS: tuple[str, ...] = (
    "cooling down",
    "cooldown",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
)

# (rule, patterns, retryable_via_failover, cool_down); first match wins.
_RULES: tuple[tuple[str, tuple[str, ...], bool, bool], ...] = (
    ("rate_limit", _RATE_LIMIT_PATTERNS, True, True),
    ("gateway", _GATEWAY_PATTERNS, True, True),
    ("no_backend", _NO_BACKEND_PATTERNS, True, False),
    ("cooldown", _COOLDOWN_PATTERNS, True, False),
    ("timeout", _TIMEOUT_PATTERNS, False, True),
)


@dataclass(slots=True, frozen=True)
class FailoverClassification:
    """Normalized verdict on what the pool should do after a backend error."""

    retryable_via_failover: bool
    cool_down: bool
    matched_rule: str
    matched_pattern: str | None = None


_NOT_RETRYABLE = FailoverClassification(
    retryable_via_failover=False,
    cool_down=False,
    matched_rule="non_retryable",
)


def classify_error(error: str | None) -> FailoverClassification:
    """Classify a backend error message by case-insensitive substring match."""

    if not error:
        return _NOT_RETRYABLE
    haystack = error.lower()
    for rule, patterns, retryable, cool_down in _RULES:
        for pattern in patterns:
            if pattern in haystack:
                return FailoverClassification(
                    retryable_via_failover=retryable,
                    cool_down=cool_down,
                    matched_rule=rule,
                    matched_pattern=pattern,
                )
    return _NOT_RETRYABLE


class CooldownCoordinator:
    """Track when each backend may be used again."""

    def __init__(
        self,
        *,
        failure_cooldown: timedelta = DEFAULT_FAILURE_COOLDOWN,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._failure_cooldown = failure_cooldown
        self._windows: TTLMap[str, str] = TTLMap(clock)

    def is_on_cooldown(self, backend: str) -> bool:
        return self._windows.active(backend)

    def set_cooldown(self, backend: str, until: datetime, reason: str | None = None) -> None:
        self._windows.set(backend, until, reason)

    def cool_down(
        self,
        backend: str,
        seconds: float | None = None,
        reason: str | None = None,
    ) -> datetime:
        """Start (or restart) the cooldown window for ``backend``."""

        ttl = timedelta(seconds=seconds) if seconds is not None else self._failure_cooldown
        return self._windows.set_for(backend, ttl, reason)

    def clear(self, backend: str | None = None) -> None:
        if backend is None:
            self._windows.clear()
        else:
            self._windows.discard(backend)

    def remaining(self, backend: str) -> timedelta | None:
        return self._windows.remaining(backend)

    def cooldown_error(self, backend: str) -> str:
        remaining = self.remaining(backend)
        seconds = math.ceil(remaining.total_seconds()) if remaining is not None else 0
        return f"Cooling down: {backend} ({seconds}s)"

    def classify(self, error: str | None) -> FailoverClassification:
        return classify_error(error)

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Describe every active cooldown window."""

        return {
            backend: {
                "until": entry.until.isoformat(),
                "remaining_seconds": max(
                    0, math.ceil((entry.until - self._windows.now()).total_seconds())
                ),
                "reason": entry.value,
            }
            for backend, entry in self._windows.items()
        }

    def next_backend(
        self,
        current: str,
        chain: Sequence[str],
        *,
        skip_cooling: bool = True,
    ) -> str | None:
        """Return the backend after ``current`` in ``chain`` that is not cooling down.

        Rotation wraps around; ``None`` when no other backend is usable.
        """

        if not chain:
            return None
        start = chain.index(current) + 1 if current in chain else 0
        ordered = list(chain[start:]) + list(chain[:start])
        for candidate in ordered:
            if candidate == current:
                continue
            if skip_cooling and self.is_on_cooldown(candidate):
                continue
            return candidate
        return None


__all__ = [
    "CooldownCoordinator",
    "DEFAULT_FAILURE_COOLDOWN",
    "FailoverClassification",
    "classify_error",
]
