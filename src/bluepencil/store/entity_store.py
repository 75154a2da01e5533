"""In-memory entity store for projects, documents, characters, and outline nodes.

The store is the single writer for every entity collection. Each mutation
builds the replacement record first and swaps it in afterwards so a failing
call leaves no partially-applied state, then publishes one event on the
injected :class:`~bluepencil.events.EventBus`.
"""

from __future__ import annotations

import logging
from dataclasses import fields, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Sequence

from ..core.content import count_words, document_from_text, extract_text
from ..core.ids import generate_id
from ..core.models import (
    Character,
    CharacterPresence,
    CharacterRole,
    CursorPosition,
    Document,
    DocumentContent,
    OutlineNode,
    OutlineNodeStatus,
    OutlineNodeType,
    Project,
)
from ..events import (
    CharacterDeleted,
    CharacterUpdated,
    CursorMoved,
    DocumentCreated,
    DocumentDeleted,
    DocumentsReordered,
    DocumentUpdated,
    Event,
    EventBus,
    OutlineUpdated,
    ProjectDeleted,
    ProjectUpdated,
)
from .outline_tree import OutlineCycleError, OutlineForest

if TYPE_CHECKING:  # pragma: no cover
    from .persistence import RecordStore

__all__ = ["EntityStore", "EntityNotFoundError", "OutlineCycleError"]

LOGGER = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "project_id", "created_at", "updated_at"})
_DERIVED_DOCUMENT_FIELDS = frozenset({"word_count"})


class EntityNotFoundError(KeyError):
    """Raised when an operation references an unknown entity id."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} {entity_id!r} not found")
        self.kind = kind
        self.entity_id = entity_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_content(value: Any) -> DocumentContent:
    if isinstance(value, DocumentContent):
        return value
    if isinstance(value, str):
        return document_from_text(value)
    if isinstance(value, Mapping):
        return DocumentContent.from_dict(value)
    if value is None:
        return DocumentContent.empty()
    raise TypeError(f"Unsupported document content type: {type(value).__name__}")


def _validate_patch(record: Any, patch: Mapping[str, Any], derived: frozenset[str] = frozenset()) -> None:
    allowed = {item.name for item in fields(record)}
    unknown = sorted(set(patch) - allowed)
    if unknown:
        raise TypeError(f"Unknown field(s) for {type(record).__name__}: {', '.join(unknown)}")
    frozen = sorted(set(patch) & (_IMMUTABLE_FIELDS | derived))
    if frozen:
        raise ValueError(f"Field(s) cannot be patched: {', '.join(frozen)}")


class EntityStore:
    """Authoritative collections with CRUD operations.

    Args:
        bus: Event bus receiving one event per mutation. A private bus is
            created when omitted.
        records: Optional persistence collaborator written through on
            every mutation.
    """

    def __init__(self, *, bus: EventBus | None = None, records: RecordStore | None = None) -> None:
        self._bus: EventBus = bus or EventBus()
        self._records = records
        self._projects: dict[str, Project] = {}
        self._documents: dict[str, Document] = {}
        self._characters: dict[str, Character] = {}
        self._presences: dict[tuple[str, str, str | None], CharacterPresence] = {}
        self._outline: dict[str, OutlineNode] = {}
        self._forests: dict[str, OutlineForest] = {}

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------
    def create_project(self, name: str, description: str = "") -> Project:
        now = _utcnow()
        project = Project(id=generate_id(), name=name, description=description, created_at=now, updated_at=now)
        self._projects[project.id] = project
        self._forests[project.id] = OutlineForest()
        self._persist("project", project.id, project)
        self._publish(ProjectUpdated(project_id=project.id))
        return project

    def get_project(self, project_id: str) -> Project:
        try:
            return self._projects[project_id]
        except KeyError:
            raise EntityNotFoundError("project", project_id) from None

    def list_projects(self) -> list[Project]:
        return sorted(self._projects.values(), key=lambda project: project.created_at)

    def update_project(self, project_id: str, **patch: Any) -> Project:
        current = self.get_project(project_id)
        _validate_patch(current, patch)
        updated = replace(current, **patch, updated_at=_utcnow())
        self._projects[project_id] = updated
        self._persist("project", project_id, updated)
        self._publish(ProjectUpdated(project_id=project_id))
        return updated

    def delete_project(self, project_id: str) -> None:
        self.get_project(project_id)
        doc_ids = [doc.id for doc in self._documents.values() if doc.project_id == project_id]
        char_ids = [char.id for char in self._characters.values() if char.project_id == project_id]
        node_ids = [node.id for node in self._outline.values() if node.project_id == project_id]
        for doc_id in doc_ids:
            del self._documents[doc_id]
            self._unpersist("document", doc_id)
        for char_id in char_ids:
            del self._characters[char_id]
            self._unpersist("character", char_id)
        self._presences = {
            key: presence for key, presence in self._presences.items() if key[0] not in char_ids
        }
        for node_id in node_ids:
            del self._outline[node_id]
            self._unpersist("outline_node", node_id)
        self._forests.pop(project_id, None)
        del self._projects[project_id]
        self._unpersist("project", project_id)
        self._publish(ProjectDeleted(project_id=project_id))

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def create_document(self, project_id: str, title: str, content: Any = None) -> Document:
        self.get_project(project_id)
        now = _utcnow()
        body = _coerce_content(content)
        document = Document(
            id=generate_id(),
            project_id=project_id,
            title=title,
            content=body,
            sort_order=sum(1 for doc in self._documents.values() if doc.project_id == project_id),
            word_count=count_words(extract_text(body)),
            created_at=now,
            updated_at=now,
        )
        self._documents[document.id] = document
        self._persist("document", document.id, document)
        self._publish(DocumentCreated(project_id=project_id, document_id=document.id))
        return document

    def get_document(self, document_id: str) -> Document:
        try:
            return self._documents[document_id]
        except KeyError:
            raise EntityNotFoundError("document", document_id) from None

    def find_document(self, document_id: str | None) -> Document | None:
        if document_id is None:
            return None
        return self._documents.get(document_id)

    def documents_for(self, project_id: str) -> list[Document]:
        docs = [doc for doc in self._documents.values() if doc.project_id == project_id]
        return sorted(docs, key=lambda doc: (doc.sort_order, doc.created_at))

    def document_text(self, document_id: str) -> str:
        return extract_text(self.get_document(document_id).content)

    def update_document(self, document_id: str, **patch: Any) -> Document:
        """Merge ``patch`` into the document.

        ``content`` may be a :class:`DocumentContent`, its dict form, or plain
        text; ``word_count`` is recomputed whenever content is patched.
        """

        current = self.get_document(document_id)
        _validate_patch(current, patch, _DERIVED_DOCUMENT_FIELDS)
        if "content" in patch:
            patch["content"] = _coerce_content(patch["content"])
            patch["word_count"] = count_words(extract_text(patch["content"]))
        updated = replace(current, **patch, updated_at=_utcnow())
        self._documents[document_id] = updated
        self._persist("document", document_id, updated)
        self._publish(
            DocumentUpdated(
                project_id=updated.project_id,
                document_id=document_id,
                fields=tuple(sorted(patch)),
                word_count=updated.word_count,
            )
        )
        return updated

    def set_cursor(self, document_id: str, anchor: int, head: int | None = None) -> Document:
        current = self.get_document(document_id)
        cursor = CursorPosition(anchor=anchor, head=anchor if head is None else head, document_id=document_id)
        updated = replace(current, last_cursor=cursor)
        self._documents[document_id] = updated
        self._publish(CursorMoved(document_id=document_id, anchor=cursor.anchor, head=cursor.head))
        return updated

    def delete_document(self, document_id: str) -> None:
        """Delete a document. Outline links to it are left dangling."""

        document = self.get_document(document_id)
        del self._documents[document_id]
        self._unpersist("document", document_id)
        self._publish(DocumentDeleted(project_id=document.project_id, document_id=document_id))

    def reorder_documents(self, project_id: str, ordered_ids: Sequence[str]) -> None:
        positions = {doc_id: index for index, doc_id in enumerate(ordered_ids)}
        changed: dict[str, Document] = {}
        for doc in self._documents.values():
            if doc.project_id != project_id or doc.id not in positions:
                continue
            changed[doc.id] = replace(doc, sort_order=positions[doc.id])
        self._documents.update(changed)
        for doc_id, doc in changed.items():
            self._persist("document", doc_id, doc)
        self._publish(DocumentsReordered(project_id=project_id, ordered_ids=tuple(ordered_ids)))

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------
    def create_character(
        self,
        project_id: str,
        name: str,
        role: CharacterRole | str = CharacterRole.SUPPORTING,
        **extra: Any,
    ) -> Character:
        self.get_project(project_id)
        now = _utcnow()
        character = Character(
            id=generate_id(),
            project_id=project_id,
            name=name,
            role=CharacterRole(role),
            created_at=now,
            updated_at=now,
        )
        if extra:
            _validate_patch(character, extra)
            character = replace(character, **extra)
        self._characters[character.id] = character
        self._persist("character", character.id, character)
        self._publish(CharacterUpdated(project_id=project_id, character_id=character.id, created=True))
        return character

    def get_character(self, character_id: str) -> Character:
        try:
            return self._characters[character_id]
        except KeyError:
            raise EntityNotFoundError("character", character_id) from None

    def find_character(self, character_id: str) -> Character | None:
        return self._characters.get(character_id)

    def characters_for(self, project_id: str) -> list[Character]:
        return [char for char in self._characters.values() if char.project_id == project_id]

    def update_character(self, character_id: str, **patch: Any) -> Character:
        current = self.get_character(character_id)
        _validate_patch(current, patch)
        if "role" in patch:
            patch["role"] = CharacterRole(patch["role"])
        if "aliases" in patch:
            patch["aliases"] = list(dict.fromkeys(patch["aliases"]))
        updated = replace(current, **patch, updated_at=_utcnow())
        self._characters[character_id] = updated
        self._persist("character", character_id, updated)
        self._publish(CharacterUpdated(project_id=updated.project_id, character_id=character_id))
        return updated

    def add_character_alias(self, character_id: str, alias: str) -> Character:
        current = self.get_character(character_id)
        if alias in current.aliases:
            return current
        return self.update_character(character_id, aliases=[*current.aliases, alias])

    def remove_character_alias(self, character_id: str, alias: str) -> Character:
        current = self.get_character(character_id)
        return self.update_character(
            character_id, aliases=[value for value in current.aliases if value != alias]
        )

    def delete_character(self, character_id: str) -> None:
        """Delete a character together with its presence records."""

        character = self.get_character(character_id)
        del self._characters[character_id]
        self._presences = {
            key: presence for key, presence in self._presences.items() if key[0] != character_id
        }
        self._unpersist("character", character_id)
        self._publish(CharacterDeleted(project_id=character.project_id, character_id=character_id))

    def update_character_presence(self, presence: CharacterPresence) -> None:
        """Insert or replace the presence record keyed by (character, document, section)."""

        character = self.get_character(presence.character_id)
        self._presences[presence.key] = presence
        self._publish(CharacterUpdated(project_id=character.project_id, character_id=character.id))

    def presences_for(self, character_id: str) -> list[CharacterPresence]:
        return [presence for key, presence in self._presences.items() if key[0] == character_id]

    # ------------------------------------------------------------------
    # Outline
    # ------------------------------------------------------------------
    def create_outline_node(
        self,
        project_id: str,
        title: str,
        type: OutlineNodeType | str = OutlineNodeType.SCENE,
        parent_id: str | None = None,
        description: str = "",
    ) -> OutlineNode:
        self.get_project(project_id)
        forest = self._forest(project_id)
        if parent_id is not None and parent_id not in forest:
            raise EntityNotFoundError("outline node", parent_id)
        now = _utcnow()
        node = OutlineNode(
            id=generate_id(),
            project_id=project_id,
            title=title,
            type=OutlineNodeType(type),
            parent_id=parent_id,
            description=description,
            sort_order=len(forest.children(parent_id)),
            created_at=now,
            updated_at=now,
        )
        forest.add(node.id, parent_id)
        self._outline[node.id] = node
        self._persist("outline_node", node.id, node)
        self._publish(OutlineUpdated(project_id=project_id, action="created", node_ids=(node.id,)))
        return node

    def get_outline_node(self, node_id: str) -> OutlineNode:
        try:
            return self._outline[node_id]
        except KeyError:
            raise EntityNotFoundError("outline node", node_id) from None

    def find_outline_node(self, node_id: str) -> OutlineNode | None:
        return self._outline.get(node_id)

    def outline_for(self, project_id: str) -> list[OutlineNode]:
        """Return the project's outline nodes in pre-order."""

        forest = self._forests.get(project_id)
        if forest is None:
            return []
        return [self._outline[node_id] for node_id, _ in forest.walk()]

    def outline_roots(self, project_id: str) -> list[OutlineNode]:
        return [self._outline[node_id] for node_id in self._forest(project_id).roots()]

    def outline_children(self, node_id: str) -> list[OutlineNode]:
        node = self.get_outline_node(node_id)
        return [self._outline[child] for child in self._forest(node.project_id).children(node_id)]

    def outline_ancestors(self, node_id: str) -> list[OutlineNode]:
        """Return ancestors nearest-first."""

        node = self.get_outline_node(node_id)
        return [self._outline[parent] for parent in self._forest(node.project_id).ancestors(node_id)]

    def outline_depth(self, node_id: str) -> int:
        node = self.get_outline_node(node_id)
        return len(self._forest(node.project_id).ancestors(node_id))

    def update_outline_node(self, node_id: str, **patch: Any) -> OutlineNode:
        """Merge ``patch`` into the node.

        ``parent_id`` and ``sort_order`` go through :meth:`move_outline_node`
        so sibling order stays contiguous. The whole patch is validated and
        coerced before anything changes.
        """

        current = self.get_outline_node(node_id)
        _validate_patch(current, patch)
        if "type" in patch:
            patch["type"] = OutlineNodeType(patch["type"])
        if "status" in patch:
            patch["status"] = OutlineNodeStatus(patch["status"])
        new_parent = patch.pop("parent_id", current.parent_id)
        index = patch.pop("sort_order", None)
        if index is not None:
            index = int(index)
        if new_parent is not None:
            self.get_outline_node(new_parent)
        if new_parent != current.parent_id or (index is not None and index != current.sort_order):
            current = self.move_outline_node(node_id, new_parent, index)
        if not patch:
            return current
        updated = replace(current, **patch, updated_at=_utcnow())
        self._outline[node_id] = updated
        self._persist("outline_node", node_id, updated)
        self._publish(OutlineUpdated(project_id=updated.project_id, action="updated", node_ids=(node_id,)))
        return updated

    def move_outline_node(self, node_id: str, new_parent_id: str | None, new_index: int | None = None) -> OutlineNode:
        """Reparent/reorder a node and resequence the destination siblings.

        Raises:
            OutlineCycleError: if ``new_parent_id`` is the node or one of its descendants.
        """

        node = self.get_outline_node(node_id)
        forest = self._forest(node.project_id)
        if new_parent_id is not None and new_parent_id not in forest:
            raise EntityNotFoundError("outline node", new_parent_id)
        old_parent = node.parent_id
        forest.move(node_id, new_parent_id, new_index)
        now = _utcnow()
        touched: set[str] = {node_id}
        for parent in {old_parent, new_parent_id}:
            for index, sibling_id in enumerate(forest.children(parent)):
                sibling = self._outline[sibling_id]
                if sibling.sort_order != index or sibling_id == node_id:
                    touched.add(sibling_id)
                self._outline[sibling_id] = replace(
                    sibling,
                    parent_id=parent,
                    sort_order=index,
                    updated_at=now if sibling_id in touched else sibling.updated_at,
                )
        for touched_id in touched:
            self._persist("outline_node", touched_id, self._outline[touched_id])
        self._publish(
            OutlineUpdated(project_id=node.project_id, action="moved", node_ids=tuple(sorted(touched)))
        )
        return self._outline[node_id]

    def delete_outline_node(self, node_id: str) -> list[str]:
        """Delete a node and all of its descendants; return the removed ids."""

        node = self.get_outline_node(node_id)
        forest = self._forest(node.project_id)
        parent = node.parent_id
        removed = forest.remove_subtree(node_id)
        for removed_id in removed:
            self._outline.pop(removed_id, None)
            self._unpersist("outline_node", removed_id)
        for index, sibling_id in enumerate(forest.children(parent)):
            sibling = self._outline[sibling_id]
            if sibling.sort_order != index:
                self._outline[sibling_id] = replace(sibling, sort_order=index)
                self._persist("outline_node", sibling_id, self._outline[sibling_id])
        self._publish(OutlineUpdated(project_id=node.project_id, action="deleted", node_ids=tuple(removed)))
        return removed

    def link_outline_to_document(self, node_id: str, document_id: str, section_id: str | None = None) -> OutlineNode:
        node = self.get_outline_node(node_id)
        documents = node.linked_document_ids
        sections = node.linked_section_ids
        if document_id not in documents:
            documents = [*documents, document_id]
        if section_id and section_id not in sections:
            sections = [*sections, section_id]
        updated = replace(node, linked_document_ids=documents, linked_section_ids=sections, updated_at=_utcnow())
        self._outline[node_id] = updated
        self._persist("outline_node", node_id, updated)
        self._publish(OutlineUpdated(project_id=node.project_id, action="linked", node_ids=(node_id,)))
        return updated

    def unlink_outline_from_document(self, node_id: str, document_id: str) -> OutlineNode:
        node = self.get_outline_node(node_id)
        updated = replace(
            node,
            linked_document_ids=[value for value in node.linked_document_ids if value != document_id],
            updated_at=_utcnow(),
        )
        self._outline[node_id] = updated
        self._persist("outline_node", node_id, updated)
        self._publish(OutlineUpdated(project_id=node.project_id, action="unlinked", node_ids=(node_id,)))
        return updated

    def outline_for_document(self, document_id: str) -> list[OutlineNode]:
        return [node for node in self._outline.values() if document_id in node.linked_document_ids]

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------
    def load(
        self,
        *,
        projects: Iterable[Project] = (),
        documents: Iterable[Document] = (),
        characters: Iterable[Character] = (),
        outline_nodes: Iterable[OutlineNode] = (),
    ) -> None:
        """Replace in-memory collections with previously persisted records.

        No events are published; outline indices are rebuilt from ``parent_id``.
        """

        self._projects = {project.id: project for project in projects}
        self._documents = {doc.id: doc for doc in documents}
        self._characters = {char.id: char for char in characters}
        self._presences = {}
        nodes = list(outline_nodes)
        self._outline = {node.id: node for node in nodes}
        self._forests = {}
        for project_id in self._projects:
            project_nodes = [node for node in nodes if node.project_id == project_id]
            forest = OutlineForest.build((node.id, node.parent_id, node.sort_order) for node in project_nodes)
            self._forests[project_id] = forest
            for node_id, _ in forest.walk():
                parent = forest.parent_of(node_id)
                if self._outline[node_id].parent_id != parent:
                    LOGGER.warning("Outline node %s had an unresolvable parent; promoted to root", node_id)
                    self._outline[node_id] = replace(self._outline[node_id], parent_id=parent)
        LOGGER.debug(
            "Entity store loaded: %d project(s), %d document(s), %d character(s), %d outline node(s)",
            len(self._projects),
            len(self._documents),
            len(self._characters),
            len(self._outline),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _forest(self, project_id: str) -> OutlineForest:
        forest = self._forests.get(project_id)
        if forest is None:
            self.get_project(project_id)
            forest = self._forests[project_id] = OutlineForest()
        return forest

    def _publish(self, event: Event) -> None:
        self._bus.publish(event)

    def _persist(self, kind: str, record_id: str, record: Any) -> None:
        if self._records is not None:
            self._records.put(kind, record_id, record)

    def _unpersist(self, kind: str, record_id: str) -> None:
        if self._records is not None:
            self._records.delete(kind, record_id)
