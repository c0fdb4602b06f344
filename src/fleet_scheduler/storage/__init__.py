"""Persistent journal of scheduler decisions and sessions."""

from .chroma import ChromaJournal, ChromaUnavailableError, JournalEvent, build_where
from .models import AssessmentEntry, SessionEntry

__all__ = [
    "AssessmentEntry",
    "ChromaJournal",
    "ChromaUnavailableError",
    "JournalEvent",
    "SessionEntry",
    "build_where",
]
