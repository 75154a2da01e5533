"""Bounded recent-edit trail and the pending update-event queue."""

from __future__ import annotations

from collections import deque
from typing import Any, Deque

from ..events import ChangeType
from .types import Priority, RecentEdit, UpdateEvent, UpdateType

DEFAULT_MAX_ENTRIES = 5
DEFAULT_SNIPPET_CHARS = 50


def make_update_event(
    type: UpdateType | str,
    payload: Any = None,
    priority: Priority | str = Priority.NORMAL,
) -> UpdateEvent:
    return UpdateEvent(type=UpdateType(type), payload=payload, priority=Priority(priority))


class EditEventLog:
    """Lossy per-document trail of recent edits, most recent first."""

    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES, snippet_chars: int = DEFAULT_SNIPPET_CHARS) -> None:
        self._max_entries = max(1, int(max_entries))
        self._snippet_chars = max(0, int(snippet_chars))
        self._entries: dict[str, Deque[RecentEdit]] = {}

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def record(
        self,
        document_id: str,
        change_type: ChangeType,
        position: int,
        snippet: str = "",
        section_id: str | None = None,
    ) -> RecentEdit:
        entry = RecentEdit(
            document_id=document_id,
            change_type=change_type,
            position=max(0, int(position)),
            snippet=(snippet or "")[: self._snippet_chars],
            section_id=section_id,
        )
        bucket = self._entries.setdefault(document_id, deque(maxlen=self._max_entries))
        bucket.appendleft(entry)
        return entry

    def recent(self, document_id: str | None = None) -> list[RecentEdit]:
        """Return edits newest first, for one document or merged across all of them."""

        if document_id is not None:
            return list(self._entries.get(document_id, ()))
        merged = [entry for bucket in self._entries.values() for entry in bucket]
        merged.sort(key=lambda entry: entry.timestamp, reverse=True)
        return merged

    def forget(self, document_id: str) -> None:
        self._entries.pop(document_id, None)

    def clear(self) -> None:
        self._entries.clear()


class UpdateEventQueue:
    """FIFO of pending :class:`UpdateEvent` objects.

    :meth:`drain` hands back a copy and empties the live queue, so events
    enqueued while a drain is being processed wait for the next drain.
    """

    def __init__(self) -> None:
        self._events: list[UpdateEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    def __bool__(self) -> bool:
        return bool(self._events)

    def enqueue(self, event: UpdateEvent) -> None:
        self._events.append(event)

    def drain(self) -> list[UpdateEvent]:
        batch = list(self._events)
        self._events.clear()
        return batch

    def peek(self) -> list[UpdateEvent]:
        return list(self._events)


__all__ = [
    "DEFAULT_MAX_ENTRIES",
    "DEFAULT_SNIPPET_CHARS",
    "EditEventLog",
    "UpdateEventQueue",
    "make_update_event",
]
