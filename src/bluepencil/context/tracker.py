"""Lifecycle management for the active context snapshot.

The tracker owns the update-event queue and is the only component that
replaces the snapshot. Staleness decays lazily: it is re-evaluated when the
snapshot is read and when a drain runs, so no background timer is needed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Literal, Sequence

from ..ai.errors import QueueProcessingError
from ..events import (
    ActiveDocumentChanged,
    CharacterDeleted,
    CharacterUpdated,
    CursorMoved,
    DocumentCreated,
    DocumentDeleted,
    DocumentEdited,
    DocumentsReordered,
    DocumentUpdated,
    EventBus,
    OutlineUpdated,
    ProjectDeleted,
)
from .builder import ContextBuilder, ContextFocus
from .edit_log import EditEventLog, UpdateEventQueue, make_update_event
from .types import ContextSnapshot, Priority, Staleness, UpdateEvent, UpdateType

if TYPE_CHECKING:  # pragma: no cover
    from ..store.persistence import RecordStore

LOGGER = logging.getLogger(__name__)

DrainOutcome = Literal["skipped", "rebuilt", "refreshed", "failed"]

SNAPSHOT_RECORD_KIND = "context_snapshot"


@dataclass(slots=True, frozen=True)
class StalenessThresholds:
    """Seconds since ``last_updated_at`` at which each staleness level begins."""

    recent: float = 30.0
    stale: float = 120.0
    outdated: float = 600.0

    def __post_init__(self) -> None:
        if not 0 <= self.recent <= self.stale <= self.outdated:
            raise ValueError("Staleness thresholds must satisfy 0 <= recent <= stale <= outdated")

    def classify(self, elapsed_seconds: float) -> Staleness:
        if elapsed_seconds >= self.outdated:
            return Staleness.OUTDATED
        if elapsed_seconds >= self.stale:
            return Staleness.STALE
        if elapsed_seconds >= self.recent:
            return Staleness.RECENT
        return Staleness.FRESH


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


class StalenessTracker:
    """Drains queued update events and keeps the snapshot fresh.

    A drained batch triggers a full rebuild when it contains a high-priority
    event, when it is longer than ``rebuild_queue_threshold``, or when the
    document changes accumulated since the last rebuild exceed
    ``rebuild_edit_threshold``. Otherwise the existing snapshot is marked
    fresh without touching its content.
    """

    def __init__(
        self,
        builder: ContextBuilder,
        *,
        edit_log: EditEventLog | None = None,
        queue: UpdateEventQueue | None = None,
        thresholds: StalenessThresholds | None = None,
        clock: Callable[[], datetime] | None = None,
        rebuild_queue_threshold: int = 10,
        rebuild_edit_threshold: int = 20,
        records: RecordStore | None = None,
    ) -> None:
        self._builder = builder
        self._edit_log = edit_log or EditEventLog()
        self._queue = queue or UpdateEventQueue()
        self._thresholds = thresholds or StalenessThresholds()
        self._clock = clock or _default_clock
        self._rebuild_queue_threshold = max(0, int(rebuild_queue_threshold))
        self._rebuild_edit_threshold = max(0, int(rebuild_edit_threshold))
        self._records = records
        self._focus: ContextFocus | None = None
        self._snapshot: ContextSnapshot | None = None
        self._version = 0
        self._edits_since_rebuild = 0
        self._is_updating = False
        self._last_error: str | None = None
        self._rebuild_attempts = 0
        self._bus: EventBus | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def snapshot(self) -> ContextSnapshot | None:
        self.evaluate_staleness()
        return self._snapshot

    @property
    def staleness(self) -> Staleness | None:
        snapshot = self.snapshot
        return snapshot.staleness if snapshot is not None else None

    @property
    def focus(self) -> ContextFocus | None:
        return self._focus

    @property
    def edit_log(self) -> EditEventLog:
        return self._edit_log

    @property
    def queue(self) -> UpdateEventQueue:
        return self._queue

    @property
    def thresholds(self) -> StalenessThresholds:
        return self._thresholds

    @property
    def is_updating(self) -> bool:
        return self._is_updating

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def rebuild_attempts(self) -> int:
        return self._rebuild_attempts

    def clear_error(self) -> None:
        self._last_error = None

    def evaluate_staleness(self) -> Staleness | None:
        """Apply time-based decay; staleness never moves back toward fresh here."""

        snapshot = self._snapshot
        if snapshot is None:
            return None
        elapsed = (self._clock() - snapshot.last_updated_at).total_seconds()
        decayed = self._thresholds.classify(elapsed)
        if decayed.rank > snapshot.staleness.rank:
            snapshot.staleness = decayed
        return snapshot.staleness

    def restore(self, snapshot: ContextSnapshot) -> None:
        """Adopt a previously persisted snapshot; later rebuilds continue its version."""

        self._snapshot = snapshot
        self._version = max(self._version, snapshot.version)
        if self._focus is None:
            self._focus = ContextFocus(project_id=snapshot.project_id, document_id=snapshot.document_id)
        self.evaluate_staleness()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def enqueue(self, event: UpdateEvent) -> None:
        self._queue.enqueue(event)

    def set_focus(
        self,
        project_id: str,
        document_id: str | None = None,
        *,
        selection: tuple[int, int] | None = None,
        cursor: int | None = None,
    ) -> None:
        previous = self._focus
        self._focus = ContextFocus(project_id=project_id, document_id=document_id, selection=selection, cursor=cursor)
        if previous is None or previous.project_id != project_id or previous.document_id != document_id:
            self.enqueue(
                make_update_event(
                    UpdateType.DOCUMENT_SWITCH,
                    {"project_id": project_id, "document_id": document_id},
                    Priority.HIGH,
                )
            )
        elif selection != previous.selection or cursor != previous.cursor:
            self.enqueue(make_update_event(UpdateType.CURSOR_MOVE, {"cursor": cursor, "selection": selection}, Priority.LOW))

    def record_edit(
        self,
        document_id: str,
        change_type: str,
        position: int,
        snippet: str = "",
        section_id: str | None = None,
    ) -> None:
        edit = self._edit_log.record(document_id, change_type, position, snippet, section_id)  # type: ignore[arg-type]
        self.enqueue(
            make_update_event(
                UpdateType.DOCUMENT_CHANGE,
                {"document_id": document_id, "change_type": edit.change_type, "position": edit.position},
            )
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    async def drain_and_process(self) -> DrainOutcome:
        """Consume every queued event and rebuild or refresh the snapshot.

        A call made while another drain is in flight, or with an empty queue,
        returns ``"skipped"``. Failures are recorded in :attr:`last_error`
        and the drained events are not re-queued.
        """

        if self._is_updating or not self._queue:
            return "skipped"
        self._is_updating = True
        batch: list[UpdateEvent] = []
        try:
            batch = self._queue.drain()
            # Let concurrent callers observe the in-flight drain.
            await asyncio.sleep(0)
            self.evaluate_staleness()
            self._edits_since_rebuild += sum(1 for event in batch if event.type is UpdateType.DOCUMENT_CHANGE)
            if self._needs_rebuild(batch):
                self._rebuild(batch)
                return "rebuilt"
            self._cheap_refresh()
            return "refreshed"
        except Exception as exc:
            self._last_error = str(exc) or type(exc).__name__
            LOGGER.warning("Context update failed after %d event(s): %s", len(batch), self._last_error, exc_info=True)
            return "failed"
        finally:
            self._is_updating = False

    async def force_refresh(self) -> DrainOutcome:
        """Queue a high-priority ``force_refresh`` event and drain immediately."""

        self.enqueue(make_update_event(UpdateType.FORCE_REFRESH, None, Priority.HIGH))
        return await self.drain_and_process()

    def _needs_rebuild(self, batch: Sequence[UpdateEvent]) -> bool:
        if self._snapshot is None:
            return True
        if any(event.priority is Priority.HIGH for event in batch):
            return True
        if len(batch) > self._rebuild_queue_threshold:
            return True
        return self._edits_since_rebuild > self._rebuild_edit_threshold

    def _rebuild(self, batch: Sequence[UpdateEvent]) -> None:
        focus = self._focus
        if focus is None:
            raise QueueProcessingError("No focus set; cannot build a context snapshot", event_count=len(batch))
        self._rebuild_attempts += 1
        snapshot = self._builder.build(focus, version=self._version + 1, edit_log=self._edit_log)
        self._version = snapshot.version
        self._snapshot = snapshot
        self._edits_since_rebuild = 0
        LOGGER.debug(
            "Rebuilt context snapshot %s (%d event(s), %s tokens, %s)",
            snapshot.id,
            len(batch),
            snapshot.token_estimate,
            snapshot.compression_level.value,
        )
        if self._records is not None:
            self._records.put(SNAPSHOT_RECORD_KIND, snapshot.project_id, snapshot)

    def _cheap_refresh(self) -> None:
        snapshot = self._snapshot
        if snapshot is None:
            return
        self._snapshot = replace(snapshot, staleness=Staleness.FRESH, last_updated_at=self._clock())

    # ------------------------------------------------------------------
    # Event bus wiring
    # ------------------------------------------------------------------
    def attach(self, bus: EventBus) -> None:
        """Subscribe to entity-store and editing-surface events on ``bus``."""

        if self._bus is not None:
            self.detach()
        self._bus = bus
        for event_type, handler in self._subscriptions():
            bus.subscribe(event_type, handler)

    def detach(self) -> None:
        bus = self._bus
        if bus is None:
            return
        for event_type, handler in self._subscriptions():
            bus.unsubscribe(event_type, handler)
        self._bus = None

    def _subscriptions(self):
        return (
            (DocumentUpdated, self._on_document_updated),
            (DocumentCreated, self._on_document_listing),
            (DocumentDeleted, self._on_document_listing),
            (DocumentsReordered, self._on_document_listing),
            (DocumentEdited, self._on_document_edited),
            (CursorMoved, self._on_cursor_moved),
            (ActiveDocumentChanged, self._on_active_document_changed),
            (CharacterUpdated, self._on_character_changed),
            (CharacterDeleted, self._on_character_changed),
            (OutlineUpdated, self._on_outline_updated),
            (ProjectDeleted, self._on_project_deleted),
        )

    def _in_focus(self, project_id: str) -> bool:
        return self._focus is None or self._focus.project_id == project_id

    def _on_document_updated(self, event: DocumentUpdated) -> None:
        if not self._in_focus(event.project_id):
            return
        priority = Priority.NORMAL if "content" in event.fields else Priority.LOW
        self.enqueue(
            make_update_event(
                UpdateType.DOCUMENT_CHANGE,
                {"document_id": event.document_id, "fields": event.fields},
                priority,
            )
        )

    def _on_document_listing(self, event: DocumentCreated | DocumentDeleted | DocumentsReordered) -> None:
        if not self._in_focus(event.project_id):
            return
        payload = {"project_id": event.project_id}
        if isinstance(event, DocumentDeleted):
            self._edit_log.forget(event.document_id)
            focus = self._focus
            if focus is not None and focus.document_id == event.document_id:
                self.set_focus(event.project_id, None)
                return
        self.enqueue(make_update_event(UpdateType.DOCUMENT_REORDER, payload))

    def _on_document_edited(self, event: DocumentEdited) -> None:
        if not self._in_focus(event.project_id):
            return
        self.record_edit(event.document_id, event.change_type, event.position, event.snippet, event.section_id)

    def _on_cursor_moved(self, event: CursorMoved) -> None:
        focus = self._focus
        if focus is None or focus.document_id != event.document_id:
            return
        selection = (event.anchor, event.head) if event.anchor != event.head else None
        self.set_focus(focus.project_id, focus.document_id, selection=selection, cursor=event.head)

    def _on_active_document_changed(self, event: ActiveDocumentChanged) -> None:
        self.set_focus(event.project_id, event.document_id)

    def _on_character_changed(self, event: CharacterUpdated | CharacterDeleted) -> None:
        if not self._in_focus(event.project_id):
            return
        self.enqueue(make_update_event(UpdateType.CHARACTER_UPDATE, {"character_id": event.character_id}))

    def _on_outline_updated(self, event: OutlineUpdated) -> None:
        if not self._in_focus(event.project_id):
            return
        self.enqueue(
            make_update_event(UpdateType.OUTLINE_UPDATE, {"action": event.action, "node_ids": event.node_ids})
        )

    def _on_project_deleted(self, event: ProjectDeleted) -> None:
        focus = self._focus
        if focus is None or focus.project_id != event.project_id:
            return
        LOGGER.info("Focused project %s deleted; discarding context snapshot", event.project_id)
        self._focus = None
        self._snapshot = None
        self._queue.drain()
        self._edit_log.clear()
        if self._records is not None:
            self._records.delete(SNAPSHOT_RECORD_KIND, event.project_id)


__all__ = [
    "DrainOutcome",
    "SNAPSHOT_RECORD_KIND",
    "StalenessThresholds",
    "StalenessTracker",
]
