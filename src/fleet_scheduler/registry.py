"""Durable task-key -> session map backed by a JSON file."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError

from .ttl import utc_now

logger = logging.getLogger(__name__)


class SessionRecord(BaseModel):
    """The live (or last known) agent session for one task key."""

    task_key: str
    session_id: str
    backend: str
    alive: bool = True
    turn_count: int = Field(default=0, ge=0)
    created_at: datetime
    last_used_at: datetime
    last_error: str | None = None
    work_dir: str = ""

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at


class SessionRegistry:
    """In-memory session map with serialized, atomic persistence.

    Keyed mutation of the map happens on the event loop and needs no lock;
    only the file write is serialized so partial writes never interleave.
    """

    def __init__(
        self,
        path: Path | None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._clock = clock or utc_now
        self._records: dict[str, SessionRecord] = {}
        self._loaded = False
        self._write_lock = asyncio.Lock()
        self._load_lock = asyncio.Lock()

    @property
    def path(self) -> Path | None:
        return self._path

    def now(self) -> datetime:
        return self._clock()

    def load(self) -> int:
        """Read the registry file, replacing in-memory state. Returns the record count."""

        self._records = self._read_records()
        self._loaded = True
        return len(self._records)

    async def ensure_loaded(self) -> None:
        """Load the file once; concurrent first callers share a single read."""

        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            records = await asyncio.to_thread(self._read_records)
            self._records = records
            self._loaded = True

    def _read_records(self) -> dict[str, SessionRecord]:
        records: dict[str, SessionRecord] = {}
        if self._path is None or not self._path.exists():
            return records
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "Session registry unreadable; starting empty",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return records
        if not isinstance(document, dict):
            logger.warning("Session registry is not a JSON object; starting empty", extra={"path": str(self._path)})
            return records

        for task_key, payload in document.items():
            try:
                record = SessionRecord.model_validate(payload)
            except ValidationError as exc:
                logger.warning(
                    "Skipping invalid session record",
                    extra={"task_key": task_key, "error": str(exc)},
                )
                continue
            records[task_key] = record
        return records

    def get(self, task_key: str) -> SessionRecord | None:
        return self._records.get(task_key)

    def all(self) -> list[SessionRecord]:
        return list(self._records.values())

    def upsert(self, record: SessionRecord) -> SessionRecord:
        self._records[record.task_key] = record
        return record

    def record_launch(
        self,
        task_key: str,
        session_id: str,
        backend: str,
        work_dir: Path | str,
    ) -> SessionRecord:
        """Create the record for a freshly launched session, replacing any stale one.

        Repeated calls for the same session keep the original creation time.
        """

        now = self._clock()
        existing = self._records.get(task_key)
        if existing is not None and existing.session_id == session_id and existing.backend == backend:
            existing.alive = True
            existing.last_used_at = now
            existing.last_error = None
            return existing
        return self.upsert(
            SessionRecord(
                task_key=task_key,
                session_id=session_id,
                backend=backend,
                alive=True,
                turn_count=0,
                created_at=now,
                last_used_at=now,
                work_dir=str(work_dir),
            )
        )

    def record_turn(self, task_key: str) -> SessionRecord | None:
        record = self._records.get(task_key)
        if record is None:
            return None
        record.turn_count += 1
        record.last_used_at = self._clock()
        record.last_error = None
        return record

    def mark_dead(self, task_key: str, error: str | None = None) -> SessionRecord | None:
        record = self._records.get(task_key)
        if record is None:
            return None
        record.alive = False
        record.last_error = error
        return record

    def record_error(self, task_key: str, error: str | None) -> SessionRecord | None:
        record = self._records.get(task_key)
        if record is None:
            return None
        record.last_error = error
        return record

    def is_eligible(
        self,
        record: SessionRecord,
        *,
        max_turns: int,
        max_age: timedelta,
    ) -> bool:
        """A record may be resumed only while alive, under the turn cap, and young enough."""

        if not record.alive:
            return False
        if record.turn_count >= max_turns:
            return False
        return record.age(self._clock()) < max_age

    def remove(self, task_key: str) -> SessionRecord | None:
        return self._records.pop(task_key, None)

    def clear(self) -> None:
        self._records.clear()

    def to_document(self) -> dict[str, Any]:
        return {key: record.model_dump(mode="json") for key, record in self._records.items()}

    async def save(self) -> None:
        """Persist the current map; concurrent callers are serialized."""

        if self._path is None:
            return
        async with self._write_lock:
            payload = json.dumps(self.to_document(), indent=2, sort_keys=True)
            await asyncio.to_thread(_atomic_write, self._path, payload)


def _atomic_write(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        try:
            os.replace(tmp_path, path)
        except OSError as exc:
            # Rename can fail across filesystems or on locked targets.
            logger.warning(
                "Atomic rename failed; writing registry in place",
                extra={"path": str(path), "error": str(exc)},
            )
            path.write_text(payload, encoding="utf-8")
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


__all__ = ["SessionRecord", "SessionRegistry"]
