"""Backend-delegated task assessment with per-task deduplication."""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Sequence

from ..backends import BackendCallError, SessionOptions
from ..config import DEFAULT_AUTO_RESOLVABLE_LOCK_FILES, FleetSettings
from ..ttl import TTLMap
from .models import Action, AssessmentDecision, TaskContext, VALID_ACTIONS
from .parsing import extract_decision_json
from .prompt import DEFAULT_DESCRIPTION_LIMIT, build_assessment_prompt
from .quick import DEFAULT_TOGGLE_BACKENDS, quick_assess

if TYPE_CHECKING:
    from ..pool import SessionPool
    from ..storage import ChromaJournal

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW = timedelta(seconds=300)

BackendCaller = Callable[[str], Awaitable[Any]]
Notifier = Callable[[str], Any]

ACTION_EMOJI: dict[Action, str] = {
    Action.MERGE: "✅",
    Action.REPROMPT_SAME: "🔁",
    Action.REPROMPT_NEW_SESSION: "🆕",
    Action.NEW_ATTEMPT: "🔄",
    Action.WAIT: "⏳",
    Action.MANUAL_REVIEW: "🙋",
    Action.CLOSE_AND_REPLAN: "🗂️",
    Action.NOOP: "💤",
}

PARSE_FAILURE_REASON = "Could not parse decision"


@dataclass(slots=True)
class DedupRecord:
    decision_hash: str
    action: str


@dataclass(slots=True)
class CallerResponse:
    """Minimal backend-caller response: the agent's final message."""

    final_response: str
    backend: str | None = None
    session_id: str | None = None


class PoolBackendCaller:
    """Run assessment prompts as ephemeral sessions through the session pool."""

    def __init__(
        self,
        pool: "SessionPool",
        work_dir: Path | str,
        *,
        timeout: float | None = None,
        options: SessionOptions | None = None,
    ) -> None:
        self._pool = pool
        self._work_dir = Path(work_dir)
        self._timeout = timeout
        self._options = options

    async def __call__(self, prompt: str) -> CallerResponse:
        result = await self._pool.run_ephemeral(prompt, self._work_dir, self._timeout, self._options)
        if not result.success:
            raise BackendCallError(result.error or f"{result.backend} returned no decision")
        return CallerResponse(
            final_response=result.output,
            backend=result.backend,
            session_id=result.session_id,
        )


class AssessmentEngine:
    """Decide the next lifecycle action for a task.

    ``decide`` tries the deterministic fast path first and only then asks a
    backend. Deep assessments for the same task id are suppressed for
    ``dedup_window`` after a successful decision.
    """

    def __init__(
        self,
        *,
        dedup_window: timedelta = DEFAULT_DEDUP_WINDOW,
        clock: Callable[[], datetime] | None = None,
        notifier: Notifier | None = None,
        journal: "ChromaJournal | None" = None,
        timeout: float | None = None,
        description_limit: int = DEFAULT_DESCRIPTION_LIMIT,
        lock_files: Iterable[str] = DEFAULT_AUTO_RESOLVABLE_LOCK_FILES,
        toggle_backends: Sequence[str] = DEFAULT_TOGGLE_BACKENDS,
        fallback_backend: str = "codex",
    ) -> None:
        self._dedup_window = dedup_window
        self._dedup: TTLMap[str, DedupRecord] = TTLMap(clock)
        self._in_flight: set[str] = set()
        self._notifier = notifier
        self._journal = journal
        self._timeout = timeout
        self._description_limit = description_limit
        self._lock_files = tuple(lock_files)
        self._toggle_backends = tuple(toggle_backends)
        self._fallback_backend = fallback_backend

    @classmethod
    def from_settings(
        cls,
        settings: FleetSettings,
        *,
        notifier: Notifier | None = None,
        journal: "ChromaJournal | None" = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "AssessmentEngine":
        return cls(
            dedup_window=timedelta(seconds=settings.dedup_window_seconds),
            clock=clock,
            notifier=notifier,
            journal=journal,
            timeout=settings.assessment_timeout_seconds,
            lock_files=settings.lock_files,
            fallback_backend=settings.default_backend,
        )

    def quick(self, context: TaskContext) -> AssessmentDecision | None:
        return quick_assess(
            context,
            lock_files=self._lock_files,
            backends=self._toggle_backends,
            fallback_backend=self._fallback_backend,
        )

    async def decide(self, context: TaskContext, backend_caller: BackendCaller) -> AssessmentDecision:
        """Run the fast path, falling back to a deep assessment when it has no answer."""

        decision = self.quick(context)
        if decision is not None:
            logger.info(
                "Resolved task via fast path",
                extra={"task_id": context.task_id, "action": decision.action.value},
            )
            self._journal_decision(context, decision, source="quick")
            return decision
        return await self.assess_task(context, backend_caller)

    async def assess_task(self, context: TaskContext, backend_caller: BackendCaller) -> AssessmentDecision:
        """Ask a backend for a decision unless one is recent or already pending for the task."""

        dedup_key = context.task_id.strip()
        if self._dedup.active(dedup_key) or dedup_key in self._in_flight:
            logger.debug("Suppressing duplicate assessment", extra={"task_id": dedup_key})
            return AssessmentDecision.noop("dedup")

        self._in_flight.add(dedup_key)
        try:
            return await self._assess(context, dedup_key, backend_caller)
        finally:
            self._in_flight.discard(dedup_key)

    async def _assess(
        self,
        context: TaskContext,
        dedup_key: str,
        backend_caller: BackendCaller,
    ) -> AssessmentDecision:
        prompt = build_assessment_prompt(context, description_limit=self._description_limit)
        try:
            if self._timeout is not None:
                response = await asyncio.wait_for(backend_caller(prompt), timeout=self._timeout)
            else:
                response = await backend_caller(prompt)
        except asyncio.TimeoutError as exc:
            reason = _timeout_reason(self._timeout, exc)
            logger.warning(reason, extra={"task_id": dedup_key})
            return AssessmentDecision.noop(reason, success=False)
        except Exception as exc:
            reason = f"Assessment call failed: {str(exc) or type(exc).__name__}"
            logger.warning(reason, extra={"task_id": dedup_key})
            return AssessmentDecision.noop(reason, success=False)

        decision = self._decision_from_text(_response_text(response))
        if not decision.success:
            logger.warning(
                "Backend returned an unparseable decision",
                extra={"task_id": dedup_key, "trigger": context.trigger},
            )
            return decision

        self._dedup.set_for(
            dedup_key,
            self._dedup_window,
            DedupRecord(decision_hash=_decision_hash(decision), action=decision.action.value),
        )
        logger.info(
            "Task assessed",
            extra={"task_id": dedup_key, "action": decision.action.value, "trigger": context.trigger},
        )
        await self._notify(context, decision)
        self._journal_decision(context, decision, source="deep")
        return decision

    def reset_dedup(self) -> int:
        """Forget every dedup entry; returns how many were active."""

        count = len(self._dedup)
        self._dedup.clear()
        return count

    def dedup_hash(self, task_id: str) -> str | None:
        record = self._dedup.get(task_id.strip())
        return record.decision_hash if record is not None else None

    def status(self) -> dict[str, Any]:
        self._dedup.purge()
        return {
            "dedup_entries": len(self._dedup),
            "in_flight": len(self._in_flight),
            "dedup_window_seconds": self._dedup_window.total_seconds(),
            "timeout_seconds": self._timeout,
        }

    def _decision_from_text(self, text: str | None) -> AssessmentDecision:
        payload = extract_decision_json(text)
        action = payload.get("action") if payload is not None else None
        if not isinstance(action, str) or action.strip().lower() not in VALID_ACTIONS:
            return AssessmentDecision(
                action=Action.MANUAL_REVIEW,
                reason=PARSE_FAILURE_REASON,
                success=False,
            )

        return AssessmentDecision(
            action=Action(action.strip().lower()),
            reason=_optional_str(payload.get("reason")) or "",
            prompt=_optional_str(payload.get("prompt")),
            wait_seconds=_optional_number(payload.get("waitSeconds", payload.get("wait_seconds"))),
            agent_type=_optional_str(payload.get("agentType", payload.get("agent_type"))),
        )

    async def _notify(self, context: TaskContext, decision: AssessmentDecision) -> None:
        if self._notifier is None:
            return
        message = summarize_decision(context, decision)
        try:
            outcome = self._notifier(message)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning(
                "Decision notifier failed",
                extra={"task_id": context.task_id, "error": str(exc)},
            )

    def _journal_decision(self, context: TaskContext, decision: AssessmentDecision, *, source: str) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_assessment(context, decision, source=source)
        except Exception as exc:
            logger.warning(
                "Failed to journal assessment",
                extra={"task_id": context.task_id, "error": str(exc)},
            )


def summarize_decision(context: TaskContext, decision: AssessmentDecision) -> str:
    """One-line human summary of a decision, suitable for a chat relay."""

    emoji = ACTION_EMOJI.get(decision.action, "ℹ️")
    title = f" ({context.task_title})" if context.task_title else ""
    summary = f"{emoji} Task {context.display_id}{title}: {decision.action.value}"
    if decision.reason:
        summary += f" - {decision.reason}"
    return summary


def _timeout_reason(timeout: float | None, exc: BaseException) -> str:
    detail = str(exc)
    if timeout is None:
        return f"Assessment call failed: {detail or 'timed out'}"
    reason = f"Assessment timed out after {timeout:g}s"
    return f"{reason}: {detail}" if detail else reason


def _response_text(response: Any) -> str | None:
    if response is None:
        return None
    if isinstance(response, str):
        return response
    if isinstance(response, Mapping):
        value = response.get("final_response", response.get("finalResponse"))
    else:
        value = getattr(response, "final_response", None)
    return value if isinstance(value, str) else None


def _decision_hash(decision: AssessmentDecision) -> str:
    payload = json.dumps(decision.to_wire(), sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = [
    "ACTION_EMOJI",
    "AssessmentEngine",
    "BackendCaller",
    "CallerResponse",
    "DEFAULT_DEDUP_WINDOW",
    "Notifier",
    "PARSE_FAILURE_REASON",
    "PoolBackendCaller",
    "summarize_decision",
]
