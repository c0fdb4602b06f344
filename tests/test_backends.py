from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from fleet_scheduler.backends import (
    BackendNotFoundError,
    ClaudeAdapter,
    CliBackendAdapter,
    CodexAdapter,
    SessionOptions,
    build_adapter,
    build_adapters,
)
from fleet_scheduler.backends.cli import sanitize_environment
from fleet_scheduler.profiles import BackendProfile


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def test_codex_launch_extracts_thread_and_message(tmp_path: Path) -> None:
    script = write_script(
        tmp_path / "codex",
        'echo "$@" > args.txt\n'
        "echo '{\"type\":\"thread.started\",\"thread_id\":\"thread-123\"}'\n"
        "echo '{\"type\":\"item.completed\",\"item\":{\"type\":\"reasoning\",\"text\":\"thinking\"}}'\n"
        "echo '{\"type\":\"item.completed\",\"item\":{\"type\":\"agent_message\",\"text\":\"all done\"}}'\n",
    )
    ready: list[tuple[str, str]] = []

    async def on_ready(session_id: str, backend: str) -> None:
        ready.append((session_id, backend))

    adapter = CodexAdapter(script)
    result = asyncio.run(
        adapter.launch("fix the bug", tmp_path, 10, SessionOptions(on_session_ready=on_ready))
    )

    assert result.success
    assert result.session_id == "thread-123"
    assert result.output == "all done"
    assert ready == [("thread-123", "codex")]
    assert (tmp_path / "args.txt").read_text(encoding="utf-8").strip() == (
        "exec --json --skip-git-repo-check fix the bug"
    )


def test_codex_resume_marks_poisoned_session(tmp_path: Path) -> None:
    script = write_script(
        tmp_path / "codex",
        'echo "$@" > args.txt\n'
        "echo 'Error: thread not found: thread-123' >&2\n"
        "exit 1\n",
    )
    ready: list[str] = []

    async def on_ready(session_id: str, backend: str) -> None:
        ready.append(session_id)

    adapter = CodexAdapter(script)
    result = asyncio.run(
        adapter.resume("thread-123", "continue", tmp_path, 10, SessionOptions(on_session_ready=on_ready))
    )

    assert not result.success
    assert result.poisoned is True
    assert "thread not found" in result.error
    assert ready == ["thread-123"]
    assert "resume thread-123 continue" in (tmp_path / "args.txt").read_text(encoding="utf-8")


def test_transient_resume_failure_is_not_poisoned(tmp_path: Path) -> None:
    script = write_script(
        tmp_path / "codex",
        "echo '{\"type\":\"turn.failed\",\"error\":{\"message\":\"429 Too Many Requests\"}}'\n",
    )

    result = asyncio.run(CodexAdapter(script).resume("thread-1", "go", tmp_path, 10, SessionOptions()))

    assert not result.success
    assert result.poisoned is False
    assert result.error == "429 Too Many Requests"


def test_launch_timeout_kills_process(tmp_path: Path) -> None:
    script = write_script(
        tmp_path / "codex",
        "echo '{\"type\":\"thread.started\",\"thread_id\":\"slow-1\"}'\n"
        "exec sleep 5\n",
    )

    result = asyncio.run(CodexAdapter(script).launch("wait", tmp_path, 0.5, SessionOptions()))

    assert not result.success
    assert result.timed_out is True
    assert result.session_id == "slow-1"
    assert result.error == "codex timed out after 0.5s"


def test_claude_stream_json(tmp_path: Path) -> None:
    script = write_script(
        tmp_path / "claude",
        "echo '{\"type\":\"system\",\"subtype\":\"init\",\"session_id\":\"c-1\"}'\n"
        "echo '{\"type\":\"assistant\",\"session_id\":\"c-1\",\"message\":{\"content\":[{\"type\":\"text\",\"text\":\"working\"}]}}'\n"
        "printf '%s\\n' '{\"type\":\"result\",\"session_id\":\"c-1\",\"result\":\"{\\\"action\\\":\\\"merge\\\"}\"}'\n",
    )

    result = asyncio.run(ClaudeAdapter(script).launch("assess", tmp_path, 10, SessionOptions()))

    assert result.success
    assert result.session_id == "c-1"
    assert result.output == '{"action":"merge"}'


def test_claude_error_result_is_failure(tmp_path: Path) -> None:
    script = write_script(
        tmp_path / "claude",
        "echo '{\"type\":\"result\",\"is_error\":true,\"result\":\"No conversation found with session ID c-9\"}'\n",
    )

    result = asyncio.run(ClaudeAdapter(script).resume("c-9", "go", tmp_path, 10, SessionOptions()))

    assert not result.success
    assert result.poisoned is True


def test_generic_adapter_plain_output_and_env(tmp_path: Path) -> None:
    script = write_script(tmp_path / "agent", 'echo "prompt=$1 flag=$FLEET_TEST_FLAG"\n')

    adapter = CliBackendAdapter(script, env={"FLEET_TEST_FLAG": "base"})
    result = asyncio.run(
        adapter.launch("hello", tmp_path, 10, SessionOptions(env={"FLEET_TEST_FLAG": "override"}))
    )

    assert result.success
    assert result.session_id is None
    assert result.output == "prompt=hello flag=override"


def test_nonzero_exit_without_output(tmp_path: Path) -> None:
    script = write_script(tmp_path / "agent", "exit 3\n")

    result = asyncio.run(CliBackendAdapter(script).launch("x", tmp_path, 10, SessionOptions()))

    assert not result.success
    assert result.error == "generic exited with code 3"


def test_resume_unsupported(tmp_path: Path) -> None:
    script = write_script(tmp_path / "agent", "echo ok\n")

    adapter = CliBackendAdapter(script, supports_resume=False)
    result = asyncio.run(adapter.resume("sid", "x", tmp_path, 10, SessionOptions()))

    assert not result.success
    assert "does not support session resume" in result.error


def test_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(BackendNotFoundError):
        CodexAdapter(tmp_path / "missing")


def test_profile_overrides_patterns_and_name(tmp_path: Path) -> None:
    script = write_script(tmp_path / "my-agent", "echo ok\n")
    profile = BackendProfile(
        id="Local",
        kind="generic",
        executable=str(script),
        launch_args=["run", "{prompt}"],
        poisoned_patterns=["gone forever"],
    )

    adapter = build_adapter("local", profile)

    assert adapter.name == "local"
    assert adapter.is_poisoned("Session GONE FOREVER")
    assert not adapter.is_poisoned("session not found")


def test_build_adapters_skips_unavailable_backends(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    script = write_script(tmp_path / "codex", "echo ok\n")
    profiles = {
        "codex": BackendProfile(id="codex", kind="codex", executable=str(script)),
        "claude": BackendProfile(id="claude", kind="claude", executable=str(tmp_path / "missing")),
    }

    with caplog.at_level("WARNING"):
        adapters = build_adapters(["codex", "claude"], profiles)

    assert list(adapters) == ["codex"]
    assert isinstance(adapters["codex"], CodexAdapter)
    assert "Backend unavailable" in caplog.text


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert "VIRTUAL_ENV" not in env
    assert env["EXTRA"] == "1"


def test_launch_reaps_agent_when_session_ready_callback_fails(tmp_path: Path) -> None:
    script = write_script(
        tmp_path / "codex",
        "echo $$ > pid.txt\n"
        "echo '{\"type\":\"thread.started\",\"thread_id\":\"s-1\"}'\n"
        "exec sleep 30\n",
    )

    async def on_ready(session_id: str, backend: str) -> None:
        raise OSError("disk full")

    adapter = CodexAdapter(script)
    with pytest.raises(OSError, match="disk full"):
        asyncio.run(adapter.launch("go", tmp_path, 60, SessionOptions(on_session_ready=on_ready)))

    pid = int((tmp_path / "pid.txt").read_text(encoding="utf-8").strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


NODE_WARNINGS_SCRIPT = (
    "printf '{\"type\":\"item.completed\",\"item\":{\"type\":\"agent_message\",\"text\":\"node=%s\"}}\\n'"
    " \"$NODE_NO_WARNINGS\"\n"
)


def test_node_cli_children_suppress_warnings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NODE_NO_WARNINGS", raising=False)
    script = write_script(tmp_path / "codex", NODE_WARNINGS_SCRIPT)

    result = asyncio.run(CodexAdapter(script).launch("go", tmp_path, 10, SessionOptions()))

    assert result.output == "node=1"


def test_node_warning_suppression_opt_out(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NODE_NO_WARNINGS", raising=False)
    script = write_script(tmp_path / "codex", NODE_WARNINGS_SCRIPT)
    profiles = {"codex": BackendProfile(id="codex", kind="codex", executable=str(script))}

    adapters = build_adapters(["codex"], profiles, suppress_node_warnings=False)
    result = asyncio.run(adapters["codex"].launch("go", tmp_path, 10, SessionOptions()))

    assert result.output == "node="


def test_sanitize_environment_node_warnings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NODE_NO_WARNINGS", raising=False)

    assert sanitize_environment(suppress_node_warnings=True)["NODE_NO_WARNINGS"] == "1"
    assert "NODE_NO_WARNINGS" not in sanitize_environment()
    assert sanitize_environment({"NODE_NO_WARNINGS": "0"}, suppress_node_warnings=True)["NODE_NO_WARNINGS"] == "0"
