"""Journal entry models reconstructed from stored events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class AssessmentEntry:
    task_id: str
    trigger: str
    action: str
    reason: str
    success: bool
    source: str
    recorded_at: datetime
    decision: dict[str, Any]


@dataclass(slots=True)
class SessionEntry:
    task_key: str | None
    session_id: str | None
    backend: str | None
    success: bool
    resumed: bool
    recorded_at: datetime
    error: str | None = None
    failover_from: str | None = None


__all__ = ["AssessmentEntry", "SessionEntry"]
