"""Chroma-backed journal of assessment decisions and session outcomes."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol

from .models import AssessmentEntry, SessionEntry

if TYPE_CHECKING:
    from ..assessment.models import AssessmentDecision, TaskContext
    from ..pool import PoolResult

EPHEMERAL_TASK_ID = "ephemeral"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by the journal."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by the journal."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class JournalEvent:
    """A stored journal event."""

    id: str
    task_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def build_where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    """Translate flat equality filters into a Chroma ``where`` clause."""

    clauses = [{key: value} for key, value in (filters or {}).items() if value is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaJournal:
    """Append-only journal of scheduler activity stored in ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "fleet_journal",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install fleet-scheduler with persistence extras"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[JournalEvent]:
        events: list[JournalEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = metadata or {}
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                JournalEvent(
                    id=event_id,
                    task_id=metadata.get("task_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        task_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> JournalEvent:
        collection = self._ensure_collection()
        counter = self._counters[task_id] = self._counters[task_id] + 1
        event_id = f"{task_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {
            "task_id": task_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            # Chroma rejects null metadata values.
            record_metadata.update({key: value for key, value in metadata.items() if value is not None})

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return JournalEvent(
            id=event_id,
            task_id=task_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_task_events(self, task_id: str, *, limit: int | None = None) -> list[JournalEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=build_where({"task_id": task_id}), limit=limit)
        return self._convert_result(result)

    def record_assessment(
        self,
        context: "TaskContext",
        decision: "AssessmentDecision",
        *,
        source: str = "deep",
    ) -> AssessmentEntry:
        wire = decision.to_wire()
        payload = {
            "task_id": context.task_id,
            "trigger": context.trigger,
            "source": source,
            "decision": wire,
        }
        event = self.record_event(
            task_id=context.task_id,
            event_type="assessment",
            body=payload,
            metadata={
                "trigger": context.trigger,
                "action": decision.action.value,
                "success": decision.success,
                "source": source,
            },
        )
        return AssessmentEntry(
            task_id=context.task_id,
            trigger=context.trigger,
            action=decision.action.value,
            reason=decision.reason,
            success=decision.success,
            source=source,
            recorded_at=event.timestamp,
            decision=wire,
        )

    def list_assessments(
        self,
        task_id: str | None = None,
        *,
        limit: int | None = None,
    ) -> list[AssessmentEntry]:
        events = self.search_events(filters={"event_type": "assessment", "task_id": task_id})
        entries: list[AssessmentEntry] = []
        for event in events:
            doc = json.loads(event.document)
            decision = doc.get("decision", {})
            entries.append(
                AssessmentEntry(
                    task_id=doc.get("task_id", event.task_id),
                    trigger=doc.get("trigger", ""),
                    action=decision.get("action", "unknown"),
                    reason=decision.get("reason", ""),
                    success=bool(decision.get("success", False)),
                    source=doc.get("source", "deep"),
                    recorded_at=event.timestamp,
                    decision=decision,
                )
            )
        return entries[-limit:] if limit else entries

    def record_session(self, outcome: "PoolResult") -> SessionEntry:
        task_id = outcome.task_key or EPHEMERAL_TASK_ID
        event = self.record_event(
            task_id=task_id,
            event_type="session",
            body={key: value for key, value in outcome.to_payload().items() if key != "output"},
            metadata={
                "backend": outcome.backend,
                "session_id": outcome.session_id,
                "success": outcome.success,
                "resumed": outcome.resumed,
                "failover_from": outcome.failover_from,
            },
        )
        return SessionEntry(
            task_key=outcome.task_key,
            session_id=outcome.session_id,
            backend=outcome.backend,
            success=outcome.success,
            resumed=outcome.resumed,
            recorded_at=event.timestamp,
            error=outcome.error,
            failover_from=outcome.failover_from,
        )

    def list_sessions(self, task_id: str | None = None) -> list[SessionEntry]:
        events = self.search_events(filters={"event_type": "session", "task_id": task_id})
        entries: list[SessionEntry] = []
        for event in events:
            doc = json.loads(event.document)
            entries.append(
                SessionEntry(
                    task_key=doc.get("task_key"),
                    session_id=doc.get("session_id"),
                    backend=doc.get("backend"),
                    success=bool(doc.get("success")),
                    resumed=bool(doc.get("resumed")),
                    recorded_at=event.timestamp,
                    error=doc.get("error"),
                    failover_from=doc.get("failover_from"),
                )
            )
        return entries

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[JournalEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=build_where(filters))
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = [
    "ChromaJournal",
    "ChromaUnavailableError",
    "JournalEvent",
    "build_where",
]
