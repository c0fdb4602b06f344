"""Async adapters that drive agent CLIs as session backends."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .base import (
    BackendAdapter,
    BackendNotFoundError,
    SessionOptions,
    SessionReadyNotifier,
    SessionResult,
)

logger = logging.getLogger(__name__)

_SESSION_ID_KEYS = ("session_id", "sessionId", "thread_id", "threadId")
_STREAM_LIMIT = 16 * 1024 * 1024
_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(
    additional: Mapping[str, str] | None = None,
    *,
    suppress_node_warnings: bool = False,
) -> dict[str, str]:
    """Return the current environment without interpreter overrides, plus ``additional``.

    With ``suppress_node_warnings`` the child gets ``NODE_NO_WARNINGS=1`` so Node
    runtime warnings stay out of the JSON event stream; ``additional`` still wins.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if suppress_node_warnings:
        env["NODE_NO_WARNINGS"] = "1"
    if additional:
        env.update(additional)
    return env


class CliBackendAdapter(BackendAdapter):
    """Run a backend CLI that emits JSON-lines events on stdout.

    Argument templates may reference ``{prompt}`` and ``{session_id}``.
    """

    executable_name = "agent"
    node_cli = False
    default_launch_args: tuple[str, ...] = ("{prompt}",)
    default_resume_args: tuple[str, ...] = ("--resume", "{session_id}", "{prompt}")

    def __init__(
        self,
        executable: Path | None = None,
        *,
        launch_args: Sequence[str] | None = None,
        resume_args: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        poisoned_patterns: Iterable[str] | None = None,
        supports_resume: bool | None = None,
        suppress_node_warnings: bool = True,
    ) -> None:
        super().__init__(poisoned_patterns=poisoned_patterns)
        self._suppress_node_warnings = suppress_node_warnings and self.node_cli
        self._executable_path = self._resolve_executable(executable)
        self._launch_args = tuple(launch_args or self.default_launch_args)
        self._resume_args = tuple(resume_args or self.default_resume_args)
        self._env = dict(env or {})
        if supports_resume is not None:
            self.supports_resume = supports_resume

    @classmethod
    def _resolve_executable(cls, explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise BackendNotFoundError(f"{cls.name} executable not found at {candidate}")

        binary = shutil.which(cls.executable_name)
        if binary is None:
            raise BackendNotFoundError(f"{cls.executable_name} CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def build_launch_args(self, prompt: str) -> list[str]:
        return [arg.replace("{prompt}", prompt) for arg in self._launch_args]

    def build_resume_args(self, session_id: str, prompt: str) -> list[str]:
        return [
            arg.replace("{session_id}", session_id).replace("{prompt}", prompt)
            for arg in self._resume_args
        ]

    def extract_session_id(self, event: Mapping[str, Any]) -> str | None:
        for key in _SESSION_ID_KEYS:
            value = event.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def extract_text(self, event: Mapping[str, Any]) -> str | None:
        if event.get("type") == "error":
            return None
        for key in ("text", "content", "message"):
            value = event.get(key)
            if isinstance(value, str) and value.strip():
                return value
        return None

    def extract_error(self, event: Mapping[str, Any]) -> str | None:
        if event.get("type") == "error":
            return str(event.get("message") or event.get("error") or "unknown error")
        return None

    async def launch(
        self,
        prompt: str,
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
    ) -> SessionResult:
        return await self._invoke(self.build_launch_args(prompt), work_dir, timeout, options)

    async def resume(
        self,
        session_id: str,
        prompt: str,
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
    ) -> SessionResult:
        if not self.supports_resume:
            return SessionResult.failure(self.name, f"{self.name} does not support session resume")

        result = await self._invoke(
            self.build_resume_args(session_id, prompt),
            work_dir,
            timeout,
            options,
            known_session_id=session_id,
        )
        if not result.success and self.is_poisoned(result.error):
            result.poisoned = True
        return result

    async def _invoke(
        self,
        args: list[str],
        work_dir: Path,
        timeout: float,
        options: SessionOptions,
        *,
        known_session_id: str | None = None,
    ) -> SessionResult:
        notifier = SessionReadyNotifier(options.on_session_ready, self.name)
        if known_session_id:
            await notifier(known_session_id)

        cmd = [str(self._executable_path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(work_dir),
                env=sanitize_environment(
                    {**self._env, **options.env},
                    suppress_node_warnings=self._suppress_node_warnings,
                ),
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            return SessionResult.failure(self.name, f"failed to start {self.name}: {exc}")

        messages: list[str] = []
        plain_lines: list[str] = []
        errors: list[str] = []

        async def _read_stdout() -> None:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    plain_lines.append(line)
                    continue
                if not isinstance(event, dict):
                    plain_lines.append(line)
                    continue
                session_id = self.extract_session_id(event)
                if session_id:
                    await notifier(session_id)
                error = self.extract_error(event)
                if error:
                    errors.append(error)
                text = self.extract_text(event)
                if text:
                    messages.append(text)

        async def _read_stderr() -> str:
            assert process.stderr is not None
            data = await process.stderr.read()
            return data.decode("utf-8", errors="replace")

        async def _communicate() -> str:
            _, stderr_text = await asyncio.gather(_read_stdout(), _read_stderr())
            await process.wait()
            return stderr_text

        try:
            stderr = await asyncio.wait_for(_communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Backend call timed out",
                extra={"backend": self.name, "timeout": timeout, "session_id": notifier.session_id},
            )
            return SessionResult.failure(
                self.name,
                f"{self.name} timed out after {timeout:g}s",
                session_id=notifier.session_id,
                timed_out=True,
                output=messages[-1] if messages else "",
            )
        finally:
            # Reached also when the session-ready callback raises mid-stream.
            await _terminate(process)

        output = messages[-1] if messages else "\n".join(plain_lines).strip()
        if process.returncode == 0 and not errors:
            return SessionResult(
                success=True,
                backend=self.name,
                output=output,
                session_id=notifier.session_id,
            )

        error = errors[-1] if errors else stderr.strip()
        if not error:
            error = f"{self.name} exited with code {process.returncode}"
        return SessionResult.failure(
            self.name,
            error,
            session_id=notifier.session_id,
            output=output,
        )


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


class CodexAdapter(CliBackendAdapter):
    name = "codex"
    executable_name = "codex"
    node_cli = True
    default_launch_args = ("exec", "--json", "--skip-git-repo-check", "{prompt}")
    default_resume_args = (
        "exec",
        "--json",
        "--skip-git-repo-check",
        "resume",
        "{session_id}",
        "{prompt}",
    )

    @classmethod
    def default_poisoned_patterns(cls) -> tuple[str, ...]:
        return (
            "invalid_encrypted_content",
            "could not be verified",
            "rollout path",
            "tool_call_id",
            "thread not found",
            "failed to parse request body as json",
        )

    def extract_text(self, event: Mapping[str, Any]) -> str | None:
        if event.get("type") != "item.completed":
            return None
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            return text if isinstance(text, str) and text.strip() else None
        return None

    def extract_error(self, event: Mapping[str, Any]) -> str | None:
        if event.get("type") == "turn.failed":
            error = event.get("error")
            if isinstance(error, dict):
                return str(error.get("message") or "turn failed")
            return "turn failed"
        return super().extract_error(event)


class ClaudeAdapter(CliBackendAdapter):
    name = "claude"
    executable_name = "claude"
    default_launch_args = ("-p", "{prompt}", "--output-format", "stream-json", "--verbose")
    default_resume_args = (
        "-p",
        "{prompt}",
        "--resume",
        "{session_id}",
        "--output-format",
        "stream-json",
        "--verbose",
    )

    @classmethod
    def default_poisoned_patterns(cls) -> tuple[str, ...]:
        return ("no conversation found", "session not found", "session expired")

    def extract_text(self, event: Mapping[str, Any]) -> str | None:
        kind = event.get("type")
        if kind == "result":
            result = event.get("result")
            return result if isinstance(result, str) and result.strip() else None
        if kind == "assistant":
            message = event.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, list):
                parts = [
                    part.get("text", "")
                    for part in content
                    if isinstance(part, dict) and part.get("type") == "text"
                ]
                text = "".join(parts).strip()
                return text or None
        return None

    def extract_error(self, event: Mapping[str, Any]) -> str | None:
        if event.get("type") == "result" and event.get("is_error"):
            return str(event.get("result") or event.get("subtype") or "claude reported an error")
        return super().extract_error(event)


class CopilotAdapter(CliBackendAdapter):
    name = "copilot"
    executable_name = "copilot"
    node_cli = True
    default_launch_args = ("-p", "{prompt}", "--allow-all-tools")
    default_resume_args = ("--resume", "{session_id}", "-p", "{prompt}", "--allow-all-tools")

    @classmethod
    def default_poisoned_patterns(cls) -> tuple[str, ...]:
        return ("session not found", "invalid session", "session expired")


__all__ = [
    "ClaudeAdapter",
    "CliBackendAdapter",
    "CodexAdapter",
    "CopilotAdapter",
    "sanitize_environment",
]
