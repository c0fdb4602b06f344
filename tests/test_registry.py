from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from fleet_scheduler.registry import SessionRegistry


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def test_registry_survives_reload(tmp_path: Path) -> None:
    clock = Clock()
    path = tmp_path / "state" / "registry.json"
    registry = SessionRegistry(path, clock=clock)

    async def scenario() -> None:
        await registry.ensure_loaded()
        registry.record_launch("task-1", "thread-abc", "codex", tmp_path)
        clock.advance(30)
        registry.record_turn("task-1")
        await registry.save()

    asyncio.run(scenario())

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["task-1"]["session_id"] == "thread-abc"
    assert document["task-1"]["turn_count"] == 1

    reloaded = SessionRegistry(path, clock=clock)
    assert reloaded.load() == 1
    record = reloaded.get("task-1")
    assert record is not None
    assert record.backend == "codex"
    assert record.alive is True
    assert record.last_used_at == clock.now
    assert record.work_dir == str(tmp_path)
    assert not list(path.parent.glob("*.tmp"))


def test_record_launch_replaces_stale_record(tmp_path: Path) -> None:
    clock = Clock()
    registry = SessionRegistry(tmp_path / "registry.json", clock=clock)
    first = registry.record_launch("task-1", "old", "codex", tmp_path)
    registry.record_turn("task-1")
    registry.mark_dead("task-1", "thread not found")

    clock.advance(60)
    replacement = registry.record_launch("task-1", "new", "copilot", tmp_path)

    assert replacement is not first
    assert replacement.turn_count == 0
    assert replacement.alive is True
    assert replacement.created_at == clock.now
    assert len(registry.all()) == 1


def test_record_launch_is_idempotent_for_same_session(tmp_path: Path) -> None:
    clock = Clock()
    registry = SessionRegistry(None, clock=clock)
    created = registry.record_launch("task-1", "sid", "codex", tmp_path).created_at
    clock.advance(5)
    again = registry.record_launch("task-1", "sid", "codex", tmp_path)

    assert again.created_at == created
    assert again.last_used_at == clock.now


def test_eligibility_rules(tmp_path: Path) -> None:
    clock = Clock()
    registry = SessionRegistry(None, clock=clock)
    record = registry.record_launch("task-1", "sid", "codex", tmp_path)
    max_age = timedelta(hours=12)

    assert registry.is_eligible(record, max_turns=40, max_age=max_age)

    record.turn_count = 40
    assert not registry.is_eligible(record, max_turns=40, max_age=max_age)

    record.turn_count = 3
    clock.advance(12 * 3600)
    assert not registry.is_eligible(record, max_turns=40, max_age=max_age)

    clock.now = record.created_at
    registry.mark_dead("task-1")
    assert not registry.is_eligible(record, max_turns=40, max_age=max_age)


def test_corrupt_registry_starts_empty(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "registry.json"
    path.write_text("{not json", encoding="utf-8")

    registry = SessionRegistry(path)
    with caplog.at_level("WARNING"):
        assert registry.load() == 0

    assert registry.all() == []
    assert "unreadable" in caplog.text


def test_invalid_records_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    path.write_text(
        json.dumps(
            {
                "good": {
                    "task_key": "good",
                    "session_id": "sid",
                    "backend": "codex",
                    "created_at": "2025-01-01T00:00:00+00:00",
                    "last_used_at": "2025-01-01T00:00:00+00:00",
                },
                "bad": {"task_key": "bad", "turn_count": -1},
            }
        ),
        encoding="utf-8",
    )

    registry = SessionRegistry(path)
    assert registry.load() == 1
    assert registry.get("good") is not None
    assert registry.get("bad") is None


def test_save_falls_back_to_direct_write(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "registry.json"
    registry = SessionRegistry(path)
    registry.record_launch("task-1", "sid", "codex", tmp_path)

    def failing_replace(src, dst):
        raise OSError("cross-device link")

    monkeypatch.setattr(os, "replace", failing_replace)
    asyncio.run(registry.save())

    assert json.loads(path.read_text(encoding="utf-8"))["task-1"]["session_id"] == "sid"
    assert not list(tmp_path.glob("*.tmp"))


def test_concurrent_saves_do_not_interleave(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    registry = SessionRegistry(path)

    async def scenario() -> None:
        for index in range(10):
            registry.record_launch(f"task-{index}", f"sid-{index}", "codex", tmp_path)
        await asyncio.gather(*(registry.save() for _ in range(5)))

    asyncio.run(scenario())

    document = json.loads(path.read_text(encoding="utf-8"))
    assert sorted(document) == sorted(f"task-{index}" for index in range(10))


def test_concurrent_first_loads_read_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    clock = Clock()
    path = tmp_path / "registry.json"
    seed = SessionRegistry(path, clock=clock)
    seed.record_launch("task-1", "thread-1", "codex", tmp_path)
    asyncio.run(seed.save())

    registry = SessionRegistry(path, clock=clock)
    reads: list[int] = []
    read_records = registry._read_records

    def counting_read():
        reads.append(1)
        return read_records()

    monkeypatch.setattr(registry, "_read_records", counting_read)

    async def launch_after_load() -> None:
        await registry.ensure_loaded()
        registry.record_launch("task-2", "thread-2", "copilot", tmp_path)

    async def scenario() -> None:
        await asyncio.gather(
            launch_after_load(),
            registry.ensure_loaded(),
            registry.ensure_loaded(),
        )

    asyncio.run(scenario())

    assert len(reads) == 1
    assert registry.get("task-1") is not None
    assert registry.get("task-2").backend == "copilot"
