"""Deterministic fast-path decisions that avoid a backend call."""

from __future__ import annotations

import posixpath
from typing import Iterable, Sequence

from ..config import DEFAULT_AUTO_RESOLVABLE_LOCK_FILES
from .models import Action, AssessmentDecision, TaskContext, Trigger

MAX_ATTEMPTS = 4
MAX_SESSION_RETRIES = 3
DEFAULT_TOGGLE_BACKENDS: tuple[str, str] = ("codex", "copilot")


def quick_assess(
    context: TaskContext,
    *,
    lock_files: Iterable[str] = DEFAULT_AUTO_RESOLVABLE_LOCK_FILES,
    backends: Sequence[str] = DEFAULT_TOGGLE_BACKENDS,
    fallback_backend: str = "codex",
) -> AssessmentDecision | None:
    """Resolve common situations without a backend; ``None`` defers to deep assessment.

    Rules are checked in priority order and the first match wins.
    """

    allowed = frozenset(lock_files)
    trigger = context.trigger

    if trigger == Trigger.REBASE_FAILED.value and _all_auto_resolvable(context.conflict_files, allowed):
        return _lock_file_reprompt(context)

    if context.attempt_count >= MAX_ATTEMPTS:
        return AssessmentDecision(
            action=Action.MANUAL_REVIEW,
            reason=f"Task has reached {context.attempt_count} attempts; escalating to a human",
        )

    if context.session_retries >= MAX_SESSION_RETRIES:
        next_agent = _toggle_backend(context.agent_type, backends, fallback_backend)
        return AssessmentDecision(
            action=Action.NEW_ATTEMPT,
            reason=(
                f"Session retried {context.session_retries} times; "
                f"starting a new attempt on {next_agent}"
            ),
            agent_type=next_agent,
        )

    if trigger == Trigger.PR_MERGED_DOWNSTREAM.value and not context.rebase_error:
        upstream = context.upstream_branch or "main"
        return AssessmentDecision(
            action=Action.REPROMPT_SAME,
            reason=f"Upstream {upstream} changed after a downstream merge; rebase needed",
            prompt=(
                f"A pull request was merged into {upstream}. Bring this branch up to date:\n"
                f"1. Run `git fetch origin`.\n"
                f"2. Run `git rebase origin/{upstream}` and resolve any conflicts.\n"
                "3. Re-run the tests and push the rebased branch."
            ),
        )

    return None


def _all_auto_resolvable(files: Sequence[str], allowed: frozenset[str]) -> bool:
    if not files:
        return False
    return all(posixpath.basename(name.replace("\\", "/")) in allowed for name in files)


def _lock_file_reprompt(context: TaskContext) -> AssessmentDecision:
    listed = "\n".join(f"- {name}" for name in context.conflict_files)
    upstream = context.upstream_branch or "the upstream branch"
    return AssessmentDecision(
        action=Action.REPROMPT_SAME,
        reason="Rebase conflicts are limited to auto-resolvable lock files",
        prompt=(
            f"The rebase onto {upstream} stopped on conflicts in generated lock files only:\n"
            f"{listed}\n\n"
            "Accept the upstream version of each file, regenerate it with the project's "
            "package manager, stage the result, and run `git rebase --continue`. "
            "Repeat until the rebase completes, then re-run the tests and push."
        ),
    )


def _toggle_backend(current: str | None, backends: Sequence[str], fallback: str) -> str:
    first, second = backends[0], backends[1]
    normalized = (current or "").strip().lower()
    if normalized == first:
        return second
    if normalized == second:
        return first
    return fallback


__all__ = [
    "DEFAULT_TOGGLE_BACKENDS",
    "MAX_ATTEMPTS",
    "MAX_SESSION_RETRIES",
    "quick_assess",
]
