"""Profile models describing how each execution backend is invoked."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

BackendKind = Literal["codex", "claude", "copilot", "generic"]


class BackendProfile(BaseModel):
    """Configuration overriding how the pool drives one backend CLI."""

    id: str = Field(..., description="Backend name as used in the failover chain.")
    kind: BackendKind = Field(
        default="generic",
        description="Adapter implementation used to parse the backend's event stream.",
    )
    executable: str | None = Field(
        default=None,
        description="Explicit path to the CLI; resolved from PATH when omitted.",
    )
    launch_args: list[str] = Field(
        default_factory=list,
        description="Argument template for fresh sessions; may reference {prompt}.",
    )
    resume_args: list[str] = Field(
        default_factory=list,
        description="Argument template for resumed sessions; may reference {session_id} and {prompt}.",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for every call.",
    )
    poisoned_patterns: list[str] | None = Field(
        default=None,
        description="Substrings marking a resume error as a permanently dead session.",
    )
    supports_resume: bool = Field(
        default=True,
        description="Whether sessions on this backend can be continued.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata surfaced in status output.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("Backend profile id must not be empty")
        return normalized

    @field_validator("launch_args", "resume_args", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("launch_args and resume_args must be sequences of strings")


__all__ = ["BackendKind", "BackendProfile"]
