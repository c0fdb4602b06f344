"""Models exchanged by the quick and deep task assessors."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Action(str, Enum):
    """Lifecycle actions a task-execution layer knows how to perform."""

    MERGE = "merge"
    REPROMPT_SAME = "reprompt_same"
    REPROMPT_NEW_SESSION = "reprompt_new_session"
    NEW_ATTEMPT = "new_attempt"
    WAIT = "wait"
    MANUAL_REVIEW = "manual_review"
    CLOSE_AND_REPLAN = "close_and_replan"
    NOOP = "noop"


VALID_ACTIONS: frozenset[str] = frozenset(action.value for action in Action)


class Trigger(str, Enum):
    """Known trigger kinds; contexts may carry others."""

    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    REBASE_FAILED = "rebase_failed"
    CI_FAILED = "ci_failed"
    PR_MERGED_DOWNSTREAM = "pr_merged_downstream"
    IDLE_DETECTED = "idle_detected"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TaskContext(_WireModel):
    """Everything the assessors know about a task at the moment of a trigger."""

    task_id: str
    trigger: str
    short_id: str | None = None
    task_title: str | None = None
    task_description: str | None = None
    branch: str | None = None
    upstream_branch: str | None = None
    agent_type: str | None = None
    attempt_count: int = Field(default=0, ge=0)
    session_retries: int = Field(default=0, ge=0)
    conflict_files: list[str] = Field(default_factory=list)
    rebase_error: str | None = None
    pr_number: int | None = None
    pr_state: str | None = None
    ci_status: str | None = None
    commits_ahead: int | None = None
    commits_behind: int | None = None
    diff_stat: str | None = None
    agent_last_message: str | None = None

    @field_validator("trigger", mode="before")
    @classmethod
    def _normalize_trigger(cls, value: Any) -> Any:
        if isinstance(value, Trigger):
            return value.value
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("conflict_files", mode="before")
    @classmethod
    def _coerce_files(cls, value: Any) -> Any:
        if value is None:
            return []
        return value

    @property
    def display_id(self) -> str:
        return self.short_id or self.task_id


class AssessmentDecision(_WireModel):
    """A recommended next step for a task.

    ``success`` reports whether the decision itself is well formed, not
    whether the recommended action is a happy one.
    """

    action: Action
    reason: str = ""
    prompt: str | None = None
    wait_seconds: float | None = None
    agent_type: str | None = None
    success: bool = True

    @classmethod
    def noop(cls, reason: str, *, success: bool = True) -> "AssessmentDecision":
        return cls(action=Action.NOOP, reason=reason, success=success)

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, omitting unset optional fields."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "Action",
    "AssessmentDecision",
    "TaskContext",
    "Trigger",
    "VALID_ACTIONS",
]
