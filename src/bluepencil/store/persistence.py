"""Record-oriented persistence for entities and the latest context snapshot.

Records are stored as JSON-compatible dictionaries keyed by ``(kind, id)``.
Supported kinds are ``project``, ``document``, ``character``,
``outline_node`` and ``context_snapshot`` (keyed by project id).
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from ..context.types import (
    CompressionLevel,
    ContextSnapshot,
    NarrativeMarker,
    OutlineAlignment,
    PresenceEntry,
    RecentEdit,
    SectionSummary,
    Staleness,
)
from ..core.models import (
    Character,
    CharacterArc,
    CharacterAttributes,
    CharacterRelationship,
    CharacterRole,
    CursorPosition,
    Document,
    DocumentContent,
    OutlineNode,
    OutlineNodeMetadata,
    OutlineNodeStatus,
    OutlineNodeType,
    Project,
    ProjectSettings,
)
from .entity_store import EntityStore

LOGGER = logging.getLogger(__name__)

RECORD_KINDS: tuple[str, ...] = ("project", "document", "character", "outline_node", "context_snapshot")


class RecordStore(Protocol):
    """Persistence collaborator consumed by the entity store and the tracker."""

    def put(self, kind: str, record_id: str, record: Any) -> None: ...

    def get(self, kind: str, record_id: str) -> Any | None: ...

    def delete(self, kind: str, record_id: str) -> None: ...

    def list(self, kind: str) -> list[Any]: ...


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------
def to_payload(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-compatible values."""

    if isinstance(value, DocumentContent):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return {item.name: to_payload(getattr(value, item.name)) for item in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): to_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_payload(item) for item in value]
    return value


def _dt(value: Any) -> datetime:
    return datetime.fromisoformat(str(value))


def _optional_dt_kwargs(payload: Mapping[str, Any], *names: str) -> dict[str, datetime]:
    return {name: _dt(payload[name]) for name in names if payload.get(name)}


def _decode_project(payload: Mapping[str, Any]) -> Project:
    settings = payload.get("settings") or {}
    return Project(
        id=str(payload["id"]),
        name=str(payload.get("name", "")),
        description=str(payload.get("description", "")),
        settings=ProjectSettings(**{key: settings[key] for key in ("default_model", "autosave_interval", "context_update_debounce") if key in settings}),
        **_optional_dt_kwargs(payload, "created_at", "updated_at"),
    )


def _decode_document(payload: Mapping[str, Any]) -> Document:
    cursor = payload.get("last_cursor")
    return Document(
        id=str(payload["id"]),
        project_id=str(payload["project_id"]),
        title=str(payload.get("title", "")),
        content=DocumentContent.from_dict(payload.get("content")),
        sort_order=int(payload.get("sort_order", 0)),
        parent_id=payload.get("parent_id"),
        word_count=int(payload.get("word_count", 0)),
        last_cursor=(
            CursorPosition(
                anchor=int(cursor["anchor"]),
                head=int(cursor["head"]),
                document_id=str(cursor.get("document_id", payload["id"])),
                **_optional_dt_kwargs(cursor, "timestamp"),
            )
            if cursor
            else None
        ),
        **_optional_dt_kwargs(payload, "created_at", "updated_at"),
    )


def _decode_character(payload: Mapping[str, Any]) -> Character:
    arc = payload.get("arc")
    return Character(
        id=str(payload["id"]),
        project_id=str(payload["project_id"]),
        name=str(payload.get("name", "")),
        aliases=[str(alias) for alias in payload.get("aliases") or ()],
        role=CharacterRole(payload.get("role", CharacterRole.SUPPORTING.value)),
        description=str(payload.get("description", "")),
        attributes=CharacterAttributes(**(payload.get("attributes") or {})),
        relationships=[CharacterRelationship(**entry) for entry in payload.get("relationships") or ()],
        arc=CharacterArc(**arc) if arc else None,
        image_url=payload.get("image_url"),
        **_optional_dt_kwargs(payload, "created_at", "updated_at"),
    )


def _decode_outline_node(payload: Mapping[str, Any]) -> OutlineNode:
    return OutlineNode(
        id=str(payload["id"]),
        project_id=str(payload["project_id"]),
        title=str(payload.get("title", "")),
        type=OutlineNodeType(payload.get("type", OutlineNodeType.SCENE.value)),
        parent_id=payload.get("parent_id"),
        description=str(payload.get("description", "")),
        sort_order=int(payload.get("sort_order", 0)),
        linked_document_ids=list(payload.get("linked_document_ids") or ()),
        linked_section_ids=list(payload.get("linked_section_ids") or ()),
        color=payload.get("color"),
        status=OutlineNodeStatus(payload.get("status", OutlineNodeStatus.PLANNED.value)),
        metadata=OutlineNodeMetadata(**(payload.get("metadata") or {})),
        **_optional_dt_kwargs(payload, "created_at", "updated_at"),
    )


def _decode_snapshot(payload: Mapping[str, Any]) -> ContextSnapshot:
    return ContextSnapshot(
        id=str(payload["id"]),
        project_id=str(payload["project_id"]),
        document_id=payload.get("document_id"),
        version=int(payload.get("version", 0)),
        staleness=Staleness(payload.get("staleness", Staleness.FRESH.value)),
        active_character_ids=list(payload.get("active_character_ids") or ()),
        active_outline_ids=list(payload.get("active_outline_ids") or ()),
        project_summary=str(payload.get("project_summary", "")),
        document_summary=str(payload.get("document_summary", "")),
        section_summaries=[SectionSummary(**entry) for entry in payload.get("section_summaries") or ()],
        presence={key: PresenceEntry(**entry) for key, entry in (payload.get("presence") or {}).items()},
        outline_alignment={
            key: OutlineAlignment(**entry) for key, entry in (payload.get("outline_alignment") or {}).items()
        },
        recent_edits=[
            RecentEdit(**{**entry, "timestamp": _dt(entry["timestamp"])}) for entry in payload.get("recent_edits") or ()
        ],
        narrative_markers=[NarrativeMarker(**entry) for entry in payload.get("narrative_markers") or ()],
        token_estimate=int(payload.get("token_estimate", 0)),
        compression_level=CompressionLevel(payload.get("compression_level", CompressionLevel.FULL.value)),
        applied_steps=tuple(payload.get("applied_steps") or ()),
        **_optional_dt_kwargs(payload, "created_at", "last_updated_at"),
    )


_DECODERS: dict[str, Callable[[Mapping[str, Any]], Any]] = {
    "project": _decode_project,
    "document": _decode_document,
    "character": _decode_character,
    "outline_node": _decode_outline_node,
    "context_snapshot": _decode_snapshot,
}


def decode_record(kind: str, payload: Mapping[str, Any]) -> Any:
    try:
        decoder = _DECODERS[kind]
    except KeyError:
        raise ValueError(f"Unknown record kind: {kind!r}") from None
    return decoder(payload)


def _check_kind(kind: str) -> None:
    if kind not in _DECODERS:
        raise ValueError(f"Unknown record kind: {kind!r}")


def _safe_record_id(record_id: str) -> str:
    safe = record_id.strip().replace(" ", "_")
    return "".join(char for char in safe if char.isalnum() or char in {"_", "-", "."}) or "default"


# ----------------------------------------------------------------------
# Stores
# ----------------------------------------------------------------------
class InMemoryRecordStore:
    """Keeps encoded payloads in dictionaries; useful for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, dict[str, Any]]] = {kind: {} for kind in RECORD_KINDS}

    def put(self, kind: str, record_id: str, record: Any) -> None:
        _check_kind(kind)
        self._records[kind][record_id] = to_payload(record)

    def get(self, kind: str, record_id: str) -> Any | None:
        _check_kind(kind)
        payload = self._records[kind].get(record_id)
        return decode_record(kind, copy.deepcopy(payload)) if payload is not None else None

    def delete(self, kind: str, record_id: str) -> None:
        _check_kind(kind)
        self._records[kind].pop(record_id, None)

    def list(self, kind: str) -> list[Any]:
        _check_kind(kind)
        return [decode_record(kind, copy.deepcopy(payload)) for payload in self._records[kind].values()]


class JsonDirectoryRecordStore:
    """One JSON file per record under ``<root>/<kind>/<id>.json``.

    Writes go to a temporary file first and are moved into place.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()
        for kind in RECORD_KINDS:
            (self._root / kind).mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def put(self, kind: str, record_id: str, record: Any) -> None:
        path = self._path_for(kind, record_id)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(to_payload(record), indent=2, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(path)

    def get(self, kind: str, record_id: str) -> Any | None:
        path = self._path_for(kind, record_id)
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        return decode_record(kind, payload)

    def delete(self, kind: str, record_id: str) -> None:
        path = self._path_for(kind, record_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return

    def list(self, kind: str) -> list[Any]:
        _check_kind(kind)
        records: list[Any] = []
        for path in sorted((self._root / kind).glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                LOGGER.warning("Skipping unreadable record %s", path)
                continue
            records.append(decode_record(kind, payload))
        return records

    def _path_for(self, kind: str, record_id: str) -> Path:
        _check_kind(kind)
        return self._root / kind / f"{_safe_record_id(record_id)}.json"


def hydrate_store(store: EntityStore, records: RecordStore) -> None:
    """Load every persisted entity from ``records`` into ``store``."""

    store.load(
        projects=records.list("project"),
        documents=records.list("document"),
        characters=records.list("character"),
        outline_nodes=records.list("outline_node"),
    )


__all__ = [
    "InMemoryRecordStore",
    "JsonDirectoryRecordStore",
    "RECORD_KINDS",
    "RecordStore",
    "decode_record",
    "hydrate_store",
    "to_payload",
]
