"""Session pool: launch, resume, and fail over agent sessions across backends."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

from .backends import BackendAdapter, SessionOptions, SessionResult
from .backends.base import SessionReadyCallback
from .config import FleetSettings
from .cooldown import CooldownCoordinator
from .registry import SessionRecord, SessionRegistry

if TYPE_CHECKING:
    from .storage import ChromaJournal

logger = logging.getLogger(__name__)

_TIMEOUT_GRACE_SECONDS = 5.0


@dataclass(slots=True)
class PoolResult:
    """Outcome of a pool operation, including which path produced it."""

    success: bool
    resumed: bool
    backend: str | None
    output: str = ""
    error: str | None = None
    session_id: str | None = None
    task_key: str | None = None
    timed_out: bool = False
    failover_from: str | None = None

    @classmethod
    def from_session(
        cls,
        result: SessionResult,
        *,
        resumed: bool,
        task_key: str | None,
    ) -> "PoolResult":
        return cls(
            success=result.success,
            resumed=resumed,
            backend=result.backend,
            output=result.output,
            error=result.error,
            session_id=result.session_id,
            task_key=task_key,
            timed_out=result.timed_out,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "resumed": self.resumed,
            "backend": self.backend,
            "session_id": self.session_id,
            "task_key": self.task_key,
            "error": self.error,
            "timed_out": self.timed_out,
            "failover_from": self.failover_from,
            "output": self.output,
        }


class SessionPool:
    """Decide launch-vs-resume per task key and drive the matching adapter."""

    def __init__(
        self,
        adapters: Mapping[str, BackendAdapter],
        registry: SessionRegistry,
        cooldowns: CooldownCoordinator,
        *,
        chain: Sequence[str] | None = None,
        default_backend: str | None = None,
        privileged_task_key: str = "fleet-monitor",
        max_turns: int = 40,
        max_age: timedelta = timedelta(hours=12),
        default_timeout: float = 3600.0,
        turn_warning_threshold: int = 20,
        privileged_refresh_turns: int = 5,
        journal: "ChromaJournal | None" = None,
    ) -> None:
        self._adapters = dict(adapters)
        self._registry = registry
        self._cooldowns = cooldowns
        self._chain = tuple(chain) if chain else tuple(self._adapters)
        self._default_backend = default_backend or (self._chain[0] if self._chain else None)
        self._privileged_task_key = privileged_task_key.strip()
        self._max_turns = max_turns
        self._max_age = max_age
        self._default_timeout = default_timeout
        self._turn_warning_threshold = turn_warning_threshold
        self._privileged_refresh_turns = privileged_refresh_turns
        self._journal = journal

    @classmethod
    def from_settings(
        cls,
        settings: FleetSettings,
        adapters: Mapping[str, BackendAdapter],
        *,
        journal: "ChromaJournal | None" = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "SessionPool":
        return cls(
            adapters,
            SessionRegistry(settings.registry_path, clock=clock),
            CooldownCoordinator(
                failure_cooldown=timedelta(seconds=settings.failure_cooldown_seconds),
                clock=clock,
            ),
            chain=settings.backend_chain,
            default_backend=settings.default_backend,
            privileged_task_key=settings.privileged_task_key,
            max_turns=settings.max_session_turns,
            max_age=timedelta(seconds=settings.session_max_age_seconds),
            default_timeout=settings.default_timeout_seconds,
            turn_warning_threshold=settings.turn_warning_threshold,
            privileged_refresh_turns=settings.privileged_refresh_turns,
            journal=journal,
        )

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def cooldowns(self) -> CooldownCoordinator:
        return self._cooldowns

    @property
    def adapters(self) -> dict[str, BackendAdapter]:
        return dict(self._adapters)

    @property
    def chain(self) -> tuple[str, ...]:
        return self._chain

    def is_privileged(self, task_key: str | None) -> bool:
        return bool(task_key) and task_key.strip() == self._privileged_task_key

    async def launch_or_resume(
        self,
        task_key: str | None,
        prompt: str,
        work_dir: Path | str,
        timeout: float | None = None,
        options: SessionOptions | None = None,
    ) -> PoolResult:
        """Resume the task's session when eligible, otherwise launch a fresh one."""

        key = task_key.strip() if task_key and task_key.strip() else None
        options = self._apply_cooldown_default(key, options or SessionOptions())
        timeout = timeout or self._default_timeout
        work_dir = Path(work_dir)

        await self._registry.ensure_loaded()
        if key is None:
            return await self._launch_with_failover(None, prompt, work_dir, timeout, options)

        record = self._registry.get(key)
        if record is not None and self._can_resume(key, record, options):
            outcome = await self._resume(key, record, prompt, work_dir, timeout, options)
            if outcome is not None:
                return outcome

        return await self._launch_with_failover(key, prompt, work_dir, timeout, options)

    async def run_ephemeral(
        self,
        prompt: str,
        work_dir: Path | str,
        timeout: float | None = None,
        options: SessionOptions | None = None,
    ) -> PoolResult:
        """Run a one-off prompt on a fresh session without touching the registry."""

        return await self._launch_with_failover(
            None,
            prompt,
            Path(work_dir),
            timeout or self._default_timeout,
            options or SessionOptions(),
        )

    def status(self) -> dict[str, Any]:
        records = self._registry.all()
        return {
            "chain": list(self._chain),
            "default_backend": self._default_backend,
            "backends": sorted(self._adapters),
            "cooldowns": self._cooldowns.snapshot(),
            "sessions": {
                "total": len(records),
                "alive": sum(1 for record in records if record.alive),
            },
        }

    def _apply_cooldown_default(self, key: str | None, options: SessionOptions) -> SessionOptions:
        if options.ignore_cooldown is None and self.is_privileged(key):
            return replace(options, ignore_cooldown=True)
        return replace(options)

    def _can_resume(self, key: str, record: SessionRecord, options: SessionOptions) -> bool:
        if options.backend and options.backend != record.backend:
            logger.info(
                "Requested backend differs from session backend; launching fresh",
                extra={"task_key": key, "requested": options.backend, "current": record.backend},
            )
            return False
        adapter = self._adapters.get(record.backend)
        if adapter is None or not adapter.supports_resume:
            return False
        if not self._registry.is_eligible(record, max_turns=self._max_turns, max_age=self._max_age):
            logger.info(
                "Session no longer eligible for resume",
                extra={
                    "task_key": key,
                    "session_id": record.session_id,
                    "alive": record.alive,
                    "turn_count": record.turn_count,
                },
            )
            return False
        if self.is_privileged(key) and self._max_turns - record.turn_count <= self._privileged_refresh_turns:
            logger.info(
                "Refreshing privileged session before turn exhaustion",
                extra={"task_key": key, "turn_count": record.turn_count, "max_turns": self._max_turns},
            )
            return False
        return True

    async def _resume(
        self,
        key: str,
        record: SessionRecord,
        prompt: str,
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
    ) -> PoolResult | None:
        """Resume ``record``; ``None`` means the session is poisoned and a launch should follow."""

        adapter = self._adapters[record.backend]
        result = await self._call(
            adapter,
            prompt,
            work_dir,
            timeout,
            options,
            session_id=record.session_id,
        )

        if result.success:
            updated = self._registry.record_turn(key)
            if updated is not None and result.session_id and result.session_id != updated.session_id:
                updated.session_id = result.session_id
            if updated is not None and updated.turn_count >= self._turn_warning_threshold:
                logger.warning(
                    "Session approaching turn limit",
                    extra={
                        "task_key": key,
                        "turn_count": updated.turn_count,
                        "max_turns": self._max_turns,
                    },
                )
            await self._registry.save()
            outcome = PoolResult.from_session(result, resumed=True, task_key=key)
            self._journal_session(outcome)
            return outcome

        if result.poisoned:
            logger.warning(
                "Resumed session is unusable; launching fresh",
                extra={"task_key": key, "session_id": record.session_id, "error": result.error},
            )
            self._registry.mark_dead(key, result.error)
            await self._registry.save()
            return None

        self._registry.record_error(key, result.error)
        outcome = PoolResult.from_session(result, resumed=False, task_key=key)
        self._journal_session(outcome)
        return outcome

    async def _launch_with_failover(
        self,
        key: str | None,
        prompt: str,
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
    ) -> PoolResult:
        backend = options.backend or self._default_backend
        outcome = await self._launch(key, backend, prompt, work_dir, timeout, options)
        if outcome.success or not options.failover:
            return outcome

        classification = self._cooldowns.classify(outcome.error)
        if not classification.retryable_via_failover:
            return outcome

        candidates = [name for name in self._chain if name in self._adapters]
        alternate = self._cooldowns.next_backend(
            backend or "",
            candidates,
            skip_cooling=not options.ignore_cooldown,
        )
        if alternate is None:
            logger.warning(
                "No alternate backend available for failover",
                extra={"task_key": key, "backend": backend, "error": outcome.error},
            )
            return outcome

        logger.warning(
            "Failing over to alternate backend",
            extra={
                "task_key": key,
                "from_backend": backend,
                "to_backend": alternate,
                "matched_rule": classification.matched_rule,
            },
        )
        retry = await self._launch(key, alternate, prompt, work_dir, timeout, options)
        retry.failover_from = backend
        return retry

    async def _launch(
        self,
        key: str | None,
        backend: str | None,
        prompt: str,
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
    ) -> PoolResult:
        adapter = self._adapters.get(backend) if backend else None
        if adapter is None:
            return PoolResult(
                success=False,
                resumed=False,
                backend=backend,
                error=f"No backend available: '{backend}' is not configured",
                task_key=key,
            )

        call_options = options
        if key is not None:
            call_options = replace(
                options,
                on_session_ready=self._persist_on_ready(key, work_dir, options.on_session_ready),
            )

        result = await self._call(adapter, prompt, work_dir, timeout, call_options)
        if result.success and key is not None:
            if result.session_id:
                self._registry.record_launch(key, result.session_id, adapter.name, work_dir)
                await self._registry.save()
            else:
                logger.warning(
                    "Backend returned no session id; task cannot be resumed",
                    extra={"task_key": key, "backend": adapter.name},
                )

        outcome = PoolResult.from_session(result, resumed=False, task_key=key)
        self._journal_session(outcome)
        return outcome

    def _persist_on_ready(
        self,
        key: str,
        work_dir: Path,
        downstream: SessionReadyCallback | None,
    ) -> SessionReadyCallback:
        async def _on_ready(session_id: str, backend: str) -> None:
            self._registry.record_launch(key, session_id, backend, work_dir)
            await self._registry.save()
            if downstream is not None:
                await downstream(session_id, backend)

        return _on_ready

    async def _call(
        self,
        adapter: BackendAdapter,
        prompt: str,
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
        *,
        session_id: str | None = None,
    ) -> SessionResult:
        if not options.ignore_cooldown and self._cooldowns.is_on_cooldown(adapter.name):
            return SessionResult.failure(adapter.name, self._cooldowns.cooldown_error(adapter.name))

        if session_id is None:
            call = adapter.launch(prompt, work_dir, timeout, options)
        else:
            call = adapter.resume(session_id, prompt, work_dir, timeout, options)

        try:
            result = await asyncio.wait_for(call, timeout=timeout + _TIMEOUT_GRACE_SECONDS)
        except asyncio.TimeoutError:
            result = SessionResult.failure(
                adapter.name,
                f"{adapter.name} timed out after {timeout:g}s",
                session_id=session_id,
                timed_out=True,
            )
        except Exception as exc:
            logger.exception(
                "Backend adapter raised",
                extra={"backend": adapter.name, "session_id": session_id},
            )
            result = SessionResult.failure(adapter.name, f"{type(exc).__name__}: {exc}", session_id=session_id)

        if not result.success:
            classification = self._cooldowns.classify(result.error)
            if classification.cool_down or result.timed_out:
                until = self._cooldowns.cool_down(adapter.name, reason=result.error)
                logger.warning(
                    "Backend cooling down",
                    extra={
                        "backend": adapter.name,
                        "until": until.isoformat(),
                        "matched_rule": classification.matched_rule,
                    },
                )
        return result

    def _journal_session(self, outcome: PoolResult) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_session(outcome)
        except Exception as exc:
            logger.warning("Failed to journal session outcome", extra={"error": str(exc)})


__all__ = ["PoolResult", "SessionPool"]
