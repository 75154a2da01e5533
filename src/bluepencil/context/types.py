"""Shared types for the context snapshot pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from ..core.content import MarkerKind
from ..events import ChangeType

ImplementationStatus = Literal["not_started", "partial", "complete"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Staleness(str, Enum):
    """Snapshot freshness, ordered from freshest to oldest."""

    FRESH = "fresh"
    RECENT = "recent"
    STALE = "stale"
    OUTDATED = "outdated"

    @property
    def rank(self) -> int:
        return _STALENESS_ORDER.index(self)


_STALENESS_ORDER: tuple[Staleness, ...] = (
    Staleness.FRESH,
    Staleness.RECENT,
    Staleness.STALE,
    Staleness.OUTDATED,
)


class CompressionLevel(str, Enum):
    FULL = "full"
    STANDARD = "standard"
    COMPACT = "compact"
    MINIMAL = "minimal"

    @property
    def rank(self) -> int:
        return _COMPRESSION_ORDER.index(self)

    def degrade(self) -> "CompressionLevel":
        """Return the next more aggressive level, saturating at ``minimal``."""

        index = min(self.rank + 1, len(_COMPRESSION_ORDER) - 1)
        return _COMPRESSION_ORDER[index]


_COMPRESSION_ORDER: tuple[CompressionLevel, ...] = (
    CompressionLevel.FULL,
    CompressionLevel.STANDARD,
    CompressionLevel.COMPACT,
    CompressionLevel.MINIMAL,
)


class UpdateType(str, Enum):
    DOCUMENT_CHANGE = "document_change"
    CURSOR_MOVE = "cursor_move"
    DOCUMENT_SWITCH = "document_switch"
    OUTLINE_UPDATE = "outline_update"
    CHARACTER_UPDATE = "character_update"
    DOCUMENT_REORDER = "document_reorder"
    FORCE_REFRESH = "force_refresh"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass(slots=True)
class UpdateEvent:
    """A queued notification that project state changed."""

    type: UpdateType
    payload: Any = None
    timestamp: datetime = field(default_factory=_utcnow)
    priority: Priority = Priority.NORMAL


@dataclass(slots=True)
class RecentEdit:
    document_id: str
    change_type: ChangeType
    position: int
    snippet: str
    timestamp: datetime = field(default_factory=_utcnow)
    section_id: str | None = None


@dataclass(slots=True)
class SectionSummary:
    section_id: str
    document_id: str
    title: str
    summary: str
    character_ids: list[str] = field(default_factory=list)
    outline_ids: list[str] = field(default_factory=list)
    word_count: int = 0


@dataclass(slots=True)
class PresenceEntry:
    """Where a character is mentioned across the project."""

    document_ids: list[str] = field(default_factory=list)
    section_ids: list[str] = field(default_factory=list)
    mention_count: int = 0
    last_mention_position: int = -1


@dataclass(slots=True)
class OutlineAlignment:
    document_ids: list[str] = field(default_factory=list)
    section_ids: list[str] = field(default_factory=list)
    status: ImplementationStatus = "not_started"
    word_count: int = 0


@dataclass(slots=True)
class NarrativeMarker:
    document_id: str
    position: int
    kind: MarkerKind
    label: str


@dataclass(slots=True)
class ContextSnapshot:
    """Versioned, budget-limited view of project state for one focus.

    Produced by :class:`~bluepencil.context.builder.ContextBuilder`; only the
    staleness tracker replaces it or touches ``staleness``/``last_updated_at``.
    """

    id: str
    project_id: str
    document_id: str | None
    version: int
    created_at: datetime = field(default_factory=_utcnow)
    last_updated_at: datetime = field(default_factory=_utcnow)
    staleness: Staleness = Staleness.FRESH
    active_character_ids: list[str] = field(default_factory=list)
    active_outline_ids: list[str] = field(default_factory=list)
    project_summary: str = ""
    document_summary: str = ""
    section_summaries: list[SectionSummary] = field(default_factory=list)
    presence: dict[str, PresenceEntry] = field(default_factory=dict)
    outline_alignment: dict[str, OutlineAlignment] = field(default_factory=dict)
    recent_edits: list[RecentEdit] = field(default_factory=list)
    narrative_markers: list[NarrativeMarker] = field(default_factory=list)
    token_estimate: int = 0
    compression_level: CompressionLevel = CompressionLevel.FULL
    applied_steps: tuple[str, ...] = ()


__all__ = [
    "CompressionLevel",
    "ContextSnapshot",
    "ImplementationStatus",
    "NarrativeMarker",
    "OutlineAlignment",
    "PresenceEntry",
    "Priority",
    "RecentEdit",
    "SectionSummary",
    "Staleness",
    "UpdateEvent",
    "UpdateType",
]
