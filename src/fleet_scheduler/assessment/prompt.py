"""Prompt construction for backend-delegated task assessment."""

from __future__ import annotations

from .models import TaskContext, Trigger, VALID_ACTIONS

DEFAULT_DESCRIPTION_LIMIT = 3000

_DECISION_SCHEMA = """\
## Your Decision

Respond with a single JSON object and nothing else:

```json
{
  "action": "<one of: %s>",
  "reason": "<one or two sentences>",
  "prompt": "<follow-up instructions for reprompt actions>",
  "waitSeconds": <seconds to wait, for the wait action>,
  "agentType": "<backend to use, for new_attempt>"
}
```

Omit optional fields that do not apply to the chosen action."""


def build_assessment_prompt(
    context: TaskContext,
    *,
    description_limit: int = DEFAULT_DESCRIPTION_LIMIT,
) -> str:
    """Render ``context`` into the markdown prompt sent to the assessing backend."""

    lines: list[str] = ["# Task Lifecycle Assessment", ""]
    lines.append(
        "You are reviewing an autonomous coding task and must decide what should happen next."
    )
    lines.append("")

    lines.append("## Task")
    lines.append(f"**Task ID:** {context.task_id}")
    if context.task_title:
        lines.append(f"**Task:** {context.task_title}")
    lines.append(f"**Trigger:** {context.trigger}")
    if context.branch:
        lines.append(f"**Branch:** {context.branch}")
    if context.upstream_branch:
        lines.append(f"**Upstream/Base:** {context.upstream_branch}")
    if context.agent_type:
        lines.append(f"**Agent:** {context.agent_type}")
    lines.append(f"**Attempt #:** {context.attempt_count or 1}")
    if context.session_retries:
        lines.append(f"**Session retries:** {context.session_retries}")
    if context.task_description:
        lines.extend(["", "### Description", context.task_description[:description_limit]])

    for block in (
        _rebase_block(context),
        _pull_request_block(context),
        _branch_status_block(context),
        _last_message_block(context),
        _downstream_block(context),
    ):
        if block:
            lines.extend(["", *block])

    lines.extend(["", _DECISION_SCHEMA % ", ".join(sorted(VALID_ACTIONS))])
    return "\n".join(lines)


def _rebase_block(context: TaskContext) -> list[str]:
    if not context.rebase_error and not context.conflict_files:
        return []
    block = ["## Rebase Failure Details"]
    if context.rebase_error:
        block.extend(["```", context.rebase_error, "```"])
    if context.conflict_files:
        block.append("Conflicting files:")
        block.extend(f"- {name}" for name in context.conflict_files)
    return block


def _pull_request_block(context: TaskContext) -> list[str]:
    if context.pr_number is None:
        return []
    block = ["## Pull Request", f"PR #{context.pr_number}"]
    if context.pr_state:
        block.append(f"State: {context.pr_state}")
    if context.ci_status:
        block.append(f"CI: {context.ci_status}")
    return block


def _branch_status_block(context: TaskContext) -> list[str]:
    if context.commits_ahead is None and context.commits_behind is None and not context.diff_stat:
        return []
    block = ["## Branch Status"]
    if context.commits_ahead is not None:
        block.append(f"Commits ahead: {context.commits_ahead}")
    if context.commits_behind is not None:
        block.append(f"Commits behind: {context.commits_behind}")
    if context.diff_stat:
        block.extend(["```", context.diff_stat, "```"])
    return block


def _last_message_block(context: TaskContext) -> list[str]:
    if not context.agent_last_message:
        return []
    return ["## Agent's Last Message", context.agent_last_message]


def _downstream_block(context: TaskContext) -> list[str]:
    if context.trigger != Trigger.PR_MERGED_DOWNSTREAM.value:
        return []
    upstream = context.upstream_branch or "the upstream branch"
    return [
        "## Downstream Impact",
        f"Another pull request was just merged into {upstream}. "
        "Decide whether this task's branch must be rebased or re-validated.",
    ]


__all__ = ["DEFAULT_DESCRIPTION_LIMIT", "build_assessment_prompt"]
