"""Tool registration for the fleet scheduler MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastmcp import Context, FastMCP

from ..assessment import AssessmentEngine, PoolBackendCaller, TaskContext
from ..backends import SessionOptions
from ..config import FleetSettings
from ..pool import SessionPool
from ..storage import ChromaJournal

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    quick_assess: Any
    assess_task: Any
    launch_or_resume: Any
    session_status: Any
    backend_status: Any
    reset_assessment_dedup: Any
    list_decisions: Any


def register_tools(
    server: FastMCP,
    *,
    pool: SessionPool,
    engine: AssessmentEngine,
    settings: FleetSettings,
    journal: ChromaJournal | None = None,
) -> ToolHandles:
    """Register the scheduler's MCP tools on the server."""

    def _resolve_work_dir(work_dir: str | None) -> Path:
        return Path(work_dir).expanduser() if work_dir else settings.work_dir

    def _quick_assess(
        task_context: dict[str, Any],
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run the deterministic fast path only."""

        task = TaskContext.model_validate(task_context)
        decision = engine.quick(task)
        _emit_log(
            context,
            "info",
            "Quick assessment",
            extra={
                "task_id": task.task_id,
                "trigger": task.trigger,
                "action": decision.action.value if decision else None,
            },
        )
        return {
            "task_id": task.task_id,
            "resolved": decision is not None,
            "decision": decision.to_wire() if decision else None,
        }

    async def _assess_task(
        task_context: dict[str, Any],
        work_dir: str | None = None,
        use_fast_path: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Decide the next lifecycle action for a task."""

        task = TaskContext.model_validate(task_context)
        caller = PoolBackendCaller(
            pool,
            _resolve_work_dir(work_dir),
            timeout=settings.assessment_timeout_seconds,
        )
        if use_fast_path:
            decision = await engine.decide(task, caller)
        else:
            decision = await engine.assess_task(task, caller)

        _emit_log(
            context,
            "info" if decision.success else "warning",
            "Task assessed",
            extra={
                "task_id": task.task_id,
                "action": decision.action.value,
                "success": decision.success,
            },
        )
        return {"task_id": task.task_id, **decision.to_wire()}

    async def _launch_or_resume(
        task_key: str,
        prompt: str,
        work_dir: str | None = None,
        backend: str | None = None,
        ignore_cooldown: bool | None = None,
        failover: bool = True,
        timeout_seconds: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Resume the task's agent session or launch a fresh one."""

        if not prompt.strip():
            raise ValueError("prompt must not be empty")

        options = SessionOptions(
            backend=backend.strip().lower() if backend else None,
            ignore_cooldown=ignore_cooldown,
            failover=failover,
        )
        result = await pool.launch_or_resume(
            task_key,
            prompt,
            _resolve_work_dir(work_dir),
            timeout_seconds,
            options,
        )

        _emit_log(
            context,
            "info" if result.success else "warning",
            "Session call finished",
            extra={
                "task_key": result.task_key,
                "backend": result.backend,
                "resumed": result.resumed,
                "success": result.success,
                "failover_from": result.failover_from,
            },
        )
        return result.to_payload()

    async def _session_status(
        task_key: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Show the registry record for one task, or every record."""

        registry = pool.registry
        await registry.ensure_loaded()
        if task_key:
            record = registry.get(task_key.strip())
            return {
                "task_key": task_key.strip(),
                "found": record is not None,
                "session": record.model_dump(mode="json") if record else None,
            }
        return {
            "sessions": [
                record.model_dump(mode="json")
                for record in sorted(registry.all(), key=lambda item: item.task_key)
            ],
        }

    def _backend_status(context: Context | None = None) -> dict[str, Any]:
        """Report configured backends, active cooldowns, and dedup state."""

        return {
            **pool.status(),
            "assessment": engine.status(),
            "journal_available": journal is not None,
        }

    def _reset_assessment_dedup(context: Context | None = None) -> dict[str, Any]:
        """Forget recent deep assessments so the next call reaches a backend."""

        cleared = engine.reset_dedup()
        _emit_log(context, "info", "Assessment dedup cleared", extra={"cleared": cleared})
        return {"cleared": cleared}

    def _list_decisions(
        task_id: str | None = None,
        limit: int = 20,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List journaled assessment decisions, newest last."""

        if journal is None:
            raise RuntimeError("Decision journal is unavailable; enable persistence before using this tool")

        entries = journal.list_assessments(task_id, limit=limit)
        return [
            {
                "task_id": entry.task_id,
                "trigger": entry.trigger,
                "action": entry.action,
                "reason": entry.reason,
                "success": entry.success,
                "source": entry.source,
                "recorded_at": entry.recorded_at.isoformat(),
            }
            for entry in entries
        ]

    tool_quick = server.tool(
        name="quick_assess",
        description=(
            "Apply the deterministic fast-path rules to a task context. Returns the decision, "
            "or resolved=false when a deep assessment is required."
        ),
    )(_quick_assess)

    tool_assess = server.tool(
        name="assess_task",
        description=(
            "Decide what should happen next to a task (merge, reprompt, new attempt, wait, "
            "manual review, close and replan, or noop). Uses the fast path first, then a backend."
        ),
    )(_assess_task)

    tool_launch = server.tool(
        name="launch_or_resume",
        description=(
            "Resume the agent session bound to a task key, or launch a fresh one. Rate-limited "
            "backends fail over to the next backend in the configured chain."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Runs an autonomous coding agent inside the given working directory",
            }
        },
    )(_launch_or_resume)

    tool_session_status = server.tool(
        name="session_status",
        description="Show the stored session record for a task key, or all records.",
    )(_session_status)

    tool_backend_status = server.tool(
        name="backend_status",
        description="Report the backend chain, active cooldown windows, and assessment dedup state.",
    )(_backend_status)

    tool_reset = server.tool(
        name="reset_assessment_dedup",
        description="Clear the assessment dedup window so repeated triggers are assessed again.",
    )(_reset_assessment_dedup)

    tool_decisions = server.tool(
        name="list_decisions",
        description="List journaled assessment decisions, optionally for one task.",
    )(_list_decisions)

    return ToolHandles(
        quick_assess=tool_quick,
        assess_task=tool_assess,
        launch_or_resume=tool_launch,
        session_status=tool_session_status,
        backend_status=tool_backend_status,
        reset_assessment_dedup=tool_reset,
        list_decisions=tool_decisions,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
