"""Time-windowed key/expiry store shared by cooldowns and assessment dedup."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Generic, Hashable, Iterator, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TTLEntry(Generic[V]):
    until: datetime
    value: V | None = None


class TTLMap(Generic[K, V]):
    """Map whose entries are live strictly while ``now < until``.

    Expired entries are invisible to every read and are dropped lazily, so
    callers never need to delete them explicitly.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or utc_now
        self._entries: dict[K, TTLEntry[V]] = {}

    def now(self) -> datetime:
        return self._clock()

    def set(self, key: K, until: datetime, value: V | None = None) -> None:
        self._entries[key] = TTLEntry(until=until, value=value)

    def set_for(self, key: K, ttl: timedelta, value: V | None = None) -> datetime:
        until = self._clock() + ttl
        self.set(key, until, value)
        return until

    def _live(self, key: K) -> TTLEntry[V] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.until:
            self._entries.pop(key, None)
            return None
        return entry

    def active(self, key: K) -> bool:
        return self._live(key) is not None

    def get(self, key: K) -> V | None:
        entry = self._live(key)
        return entry.value if entry is not None else None

    def expires_at(self, key: K) -> datetime | None:
        entry = self._live(key)
        return entry.until if entry is not None else None

    def remaining(self, key: K) -> timedelta | None:
        entry = self._live(key)
        if entry is None:
            return None
        return entry.until - self._clock()

    def discard(self, key: K) -> None:
        self._entries.pop(key, None)

    def purge(self) -> int:
        """Drop expired entries and return how many were removed."""

        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.until]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def items(self) -> Iterator[tuple[K, TTLEntry[V]]]:
        self.purge()
        return iter(list(self._entries.items()))

    def __contains__(self, key: object) -> bool:
        return self.active(key)  # type: ignore[arg-type]

    def __len__(self) -> int:
        self.purge()
        return len(self._entries)


__all__ = ["TTLEntry", "TTLMap", "utc_now"]
