"""Dataclasses describing projects, documents, characters, and outline nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


class CharacterRole(str, Enum):
    """Narrative importance of a character, most important first."""

    PROTAGONIST = "protagonist"
    ANTAGONIST = "antagonist"
    SUPPORTING = "supporting"
    MINOR = "minor"
    MENTIONED = "mentioned"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self)

    @property
    def is_primary(self) -> bool:
        return self in (CharacterRole.PROTAGONIST, CharacterRole.ANTAGONIST)

    @property
    def is_secondary(self) -> bool:
        return self in (CharacterRole.MINOR, CharacterRole.MENTIONED)


_ROLE_ORDER: tuple[CharacterRole, ...] = (
    CharacterRole.PROTAGONIST,
    CharacterRole.ANTAGONIST,
    CharacterRole.SUPPORTING,
    CharacterRole.MINOR,
    CharacterRole.MENTIONED,
)


class OutlineNodeType(str, Enum):
    ACT = "act"
    CHAPTER = "chapter"
    SCENE = "scene"
    BEAT = "beat"
    NOTE = "note"


class OutlineNodeStatus(str, Enum):
    """Drafting status; progression is conventional, not enforced."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    DRAFT = "draft"
    REVISED = "revised"
    COMPLETE = "complete"


@dataclass(slots=True)
class ProjectSettings:
    default_model: str = "gpt-4o-mini"
    autosave_interval: int = 5_000
    context_update_debounce: int = 500


@dataclass(slots=True)
class Project:
    id: str
    name: str
    description: str = ""
    settings: ProjectSettings = field(default_factory=ProjectSettings)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class Mark:
    type: str
    attrs: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ContentNode:
    """A container (``children``) or a text leaf (``text``) in a document tree."""

    type: str
    text: str | None = None
    attrs: dict[str, Any] = field(default_factory=dict)
    children: list["ContentNode"] = field(default_factory=list)
    marks: list[Mark] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return self.text is not None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.text is not None:
            payload["text"] = self.text
        if self.attrs:
            payload["attrs"] = dict(self.attrs)
        if self.children:
            payload["content"] = [child.to_dict() for child in self.children]
        if self.marks:
            payload["marks"] = [{"type": mark.type, "attrs": dict(mark.attrs)} for mark in self.marks]
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ContentNode":
        marks = [
            Mark(type=str(entry.get("type", "")), attrs=dict(entry.get("attrs") or {}))
            for entry in payload.get("marks") or ()
            if isinstance(entry, Mapping)
        ]
        children = [
            cls.from_dict(child) for child in payload.get("content") or () if isinstance(child, Mapping)
        ]
        text = payload.get("text")
        return cls(
            type=str(payload.get("type", "paragraph")),
            text=str(text) if text is not None else None,
            attrs=dict(payload.get("attrs") or {}),
            children=children,
            marks=marks,
        )


@dataclass(slots=True)
class DocumentContent:
    """Root of a document tree (``type == "doc"``)."""

    children: list[ContentNode] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "DocumentContent":
        return cls(children=[ContentNode(type="paragraph")])

    def to_dict(self) -> dict[str, Any]:
        return {"type": "doc", "content": [child.to_dict() for child in self.children]}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "DocumentContent":
        if not payload:
            return cls.empty()
        return cls(
            children=[
                ContentNode.from_dict(child)
                for child in payload.get("content") or ()
                if isinstance(child, Mapping)
            ]
        )


@dataclass(slots=True)
class CursorPosition:
    anchor: int
    head: int
    document_id: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class Document:
    id: str
    project_id: str
    title: str
    content: DocumentContent = field(default_factory=DocumentContent.empty)
    sort_order: int = 0
    parent_id: str | None = None
    word_count: int = 0
    last_cursor: CursorPosition | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class CharacterAttributes:
    age: str | None = None
    occupation: str | None = None
    physical_description: str | None = None
    personality: str | None = None
    backstory: str | None = None
    goals: str | None = None
    fears: str | None = None
    strengths: str | None = None
    weaknesses: str | None = None
    speech: str | None = None
    custom_fields: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CharacterRelationship:
    character_id: str
    relationship_type: str
    description: str = ""


@dataclass(slots=True)
class CharacterArc:
    starting_state: str = ""
    ending_state: str = ""
    key_moments: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Character:
    id: str
    project_id: str
    name: str
    aliases: list[str] = field(default_factory=list)
    role: CharacterRole = CharacterRole.SUPPORTING
    description: str = ""
    attributes: CharacterAttributes = field(default_factory=CharacterAttributes)
    relationships: list[CharacterRelationship] = field(default_factory=list)
    arc: CharacterArc | None = None
    image_url: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def surface_names(self) -> list[str]:
        """Return the name followed by aliases, skipping blanks."""

        names = [self.name, *self.aliases]
        return [name for name in names if name and name.strip()]


@dataclass(slots=True)
class CharacterMention:
    position: int
    length: int
    name_used: str
    context: str = ""


@dataclass(slots=True)
class CharacterPresence:
    character_id: str
    document_id: str
    section_id: str | None = None
    mentions: list[CharacterMention] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.character_id, self.document_id, self.section_id)


@dataclass(slots=True)
class OutlineNodeMetadata:
    word_count_target: int | None = None
    pov: str | None = None
    timeline: str | None = None
    location: str | None = None
    tension: int | None = None
    notes: str | None = None


@dataclass(slots=True)
class OutlineNode:
    id: str
    project_id: str
    title: str
    type: OutlineNodeType = OutlineNodeType.SCENE
    parent_id: str | None = None
    description: str = ""
    sort_order: int = 0
    linked_document_ids: list[str] = field(default_factory=list)
    linked_section_ids: list[str] = field(default_factory=list)
    color: str | None = None
    status: OutlineNodeStatus = OutlineNodeStatus.PLANNED
    metadata: OutlineNodeMetadata = field(default_factory=OutlineNodeMetadata)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


__all__ = [
    "Character",
    "CharacterArc",
    "CharacterAttributes",
    "CharacterMention",
    "CharacterPresence",
    "CharacterRelationship",
    "CharacterRole",
    "ContentNode",
    "CursorPosition",
    "Document",
    "DocumentContent",
    "Mark",
    "OutlineNode",
    "OutlineNodeMetadata",
    "OutlineNodeStatus",
    "OutlineNodeType",
    "Project",
    "ProjectSettings",
]
