from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from fleet_scheduler.assessment import Action, AssessmentDecision, TaskContext
from fleet_scheduler.pool import PoolResult
from fleet_scheduler.storage import AssessmentEntry, ChromaJournal, SessionEntry, build_where


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any]) -> bool:
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            assert all(value is not None for value in metadata.values())
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            filtered = [record for record in filtered if _matches(record.metadata, where)]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def make_journal(tmp_path: Path) -> ChromaJournal:
    return ChromaJournal(
        tmp_path,
        client_factory=lambda: StubClient(),
        clock=lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )


def test_record_and_fetch_events(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    event = journal.record_event(
        task_id="task-1",
        event_type="note",
        body={"message": "started"},
        metadata={"level": "INFO", "ignored": None},
    )

    assert event.task_id == "task-1"
    assert event.metadata["sequence"] == 1
    assert "ignored" not in event.metadata

    journal.record_event(task_id="task-1", event_type="note", body="second")
    events = journal.fetch_task_events("task-1")
    assert [item.metadata["sequence"] for item in events] == [1, 2]
    assert events[0].document == '{"message": "started"}'


def test_search_filters(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)
    journal.record_event(task_id="t", event_type="note", body="Investigate auth")
    journal.record_event(task_id="t", event_type="note", body="Fix logging")

    results = journal.search_events("auth")
    assert len(results) == 1
    assert "auth" in results[0].document
    assert len(journal.search_events(filters={"event_type": "note", "task_id": "t"})) == 2


def test_assessment_round_trip(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)
    context = TaskContext(task_id="task-9", trigger="ci_failed")
    decision = AssessmentDecision(action=Action.WAIT, reason="CI running", wait_seconds=120)

    entry = journal.record_assessment(context, decision, source="deep")
    journal.record_assessment(
        TaskContext(task_id="other", trigger="agent_completed"),
        AssessmentDecision(action=Action.MERGE, reason="green"),
    )

    assert isinstance(entry, AssessmentEntry)
    entries = journal.list_assessments("task-9")
    assert len(entries) == 1
    assert entries[0].action == "wait"
    assert entries[0].trigger == "ci_failed"
    assert entries[0].decision["waitSeconds"] == 120
    assert len(journal.list_assessments()) == 2
    assert len(journal.list_assessments(limit=1)) == 1


def test_session_outcomes(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)
    journal.record_session(
        PoolResult(
            success=True,
            resumed=False,
            backend="copilot",
            session_id="s-1",
            task_key="task-1",
            failover_from="codex",
            output="long transcript",
        )
    )
    entry = journal.record_session(
        PoolResult(success=False, resumed=False, backend="codex", error="429", task_key=None)
    )

    assert isinstance(entry, SessionEntry)
    sessions = journal.list_sessions("task-1")
    assert len(sessions) == 1
    assert sessions[0].failover_from == "codex"
    assert "long transcript" not in journal.fetch_task_events("task-1")[0].document
    assert journal.list_sessions("ephemeral")[0].error == "429"


def test_build_where() -> None:
    assert build_where(None) is None
    assert build_where({"task_id": None}) is None
    assert build_where({"task_id": "a"}) == {"task_id": "a"}
    assert build_where({"task_id": "a", "event_type": "b"}) == {
        "$and": [{"task_id": "a"}, {"event_type": "b"}]
    }
