"""Deterministic construction of context snapshots from the entity store.

The builder reads the store and never mutates it. For a given store state,
focus, and edit log it always produces the same snapshot content; only the
timestamps come from the injected clock.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Sequence

from ..core.content import Section, detect_markers, extract_text, split_sections
from ..core.models import Character, Document, OutlineNode, OutlineNodeStatus
from ..store.entity_store import EntityStore
from .budget import (
    DEFAULT_TOKEN_BUDGET,
    SHORTENED_SUMMARY_CHARS,
    BudgetReport,
    DegradationContext,
    DegradationPolicy,
    SnapshotCostModel,
    fit_to_budget,
)
from .edit_log import EditEventLog
from .types import (
    ContextSnapshot,
    NarrativeMarker,
    OutlineAlignment,
    PresenceEntry,
    SectionSummary,
)

LOGGER = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


@dataclass(slots=True)
class ContextFocus:
    """What the author is looking at: a project and optionally a document and selection."""

    project_id: str
    document_id: str | None = None
    selection: tuple[int, int] | None = None
    cursor: int | None = None

    @property
    def position(self) -> int | None:
        if self.selection is not None:
            start, end = self.selection
            return (min(start, end) + max(start, end)) // 2
        return self.cursor


@dataclass(slots=True)
class BuilderConfig:
    token_budget: int = DEFAULT_TOKEN_BUDGET
    model_name: str | None = None
    recent_window_chars: int = 2_000
    max_unfocused_characters: int = 12
    max_section_summaries: int = 8
    section_summary_chars: int = 280
    shortened_summary_chars: int = SHORTENED_SUMMARY_CHARS
    document_summary_chars: int = 400
    max_recent_edits: int = 10
    max_narrative_markers: int = 20
    degradation: DegradationPolicy = field(default_factory=DegradationPolicy)


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


def summarize_text(text: str, limit: int) -> str:
    """Return leading whole sentences of ``text`` that fit in ``limit`` characters."""

    cleaned = " ".join(text.split())
    if len(cleaned) <= limit:
        return cleaned
    summary = ""
    for sentence in _SENTENCE_END.split(cleaned):
        candidate = f"{summary} {sentence}".strip()
        if len(candidate) > limit:
            break
        summary = candidate
    if not summary:
        summary = cleaned[: max(0, limit - 1)].rstrip() + "…"
    return summary


def find_mentions(text: str, names: Iterable[str]) -> list[tuple[int, str]]:
    """Return non-overlapping ``(offset, name)`` matches, longest names claiming first."""

    claimed: list[tuple[int, int]] = []
    matches: list[tuple[int, str]] = []
    for name in sorted({name for name in names if name}, key=lambda value: (-len(value), value)):
        start = text.find(name)
        while start != -1:
            end = start + len(name)
            if not any(start < other_end and other_start < end for other_start, other_end in claimed):
                claimed.append((start, end))
                matches.append((start, name))
            start = text.find(name, start + 1)
    matches.sort()
    return matches


class ContextBuilder:
    """Builds :class:`ContextSnapshot` objects for a focus.

    Args:
        store: Entity store to read from.
        config: Budget and bounds; defaults mirror the application defaults.
        cost_model: Token estimator; defaults to the shared token counter registry.
        clock: Timestamp source for ``created_at``/``last_updated_at``.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        config: BuilderConfig | None = None,
        cost_model: SnapshotCostModel | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._config = config or BuilderConfig()
        self._cost_model = cost_model or SnapshotCostModel(model_name=self._config.model_name)
        self._clock = clock or _default_clock
        self._last_report: BudgetReport | None = None

    @property
    def config(self) -> BuilderConfig:
        return self._config

    @property
    def last_report(self) -> BudgetReport | None:
        return self._last_report

    def build(
        self,
        focus: ContextFocus,
        *,
        version: int = 1,
        edit_log: EditEventLog | None = None,
    ) -> ContextSnapshot:
        """Return a fresh snapshot for ``focus`` stamped with ``version``."""

        now = self._clock()
        snapshot = ContextSnapshot(
            id=f"{focus.project_id}:v{version}",
            project_id=focus.project_id,
            document_id=None,
            version=version,
            created_at=now,
            last_updated_at=now,
        )
        project = self._store_lookup(self._store.get_project, focus.project_id)
        if project is None:
            LOGGER.debug("Building empty context snapshot for unknown project %s", focus.project_id)
            return snapshot

        documents = self._store.documents_for(project.id)
        characters = sorted(
            self._store.characters_for(project.id), key=lambda char: (char.role.rank, char.name, char.id)
        )
        outline = self._store.outline_for(project.id)
        focused = next((doc for doc in documents if doc.id == focus.document_id), None)
        texts = {doc.id: extract_text(doc.content) for doc in documents}
        sections = {doc.id: split_sections(doc.id, doc.content) for doc in documents}

        snapshot.document_id = focused.id if focused is not None else None
        snapshot.project_summary = self._project_summary(project.description, documents, characters, outline)
        if focused is not None:
            snapshot.document_summary = self._document_summary(focused, texts[focused.id])
            window = self._focus_window(texts[focused.id], focus.position)
            snapshot.active_character_ids = [
                char.id for char in characters if any(name in window for name in char.surface_names())
            ]
            snapshot.active_outline_ids = self._active_outline(outline, focused.id)
            snapshot.section_summaries = self._section_summaries(
                focused, sections[focused.id], characters, outline
            )
        else:
            snapshot.active_character_ids = [char.id for char in characters[: self._config.max_unfocused_characters]]

        snapshot.presence = self._presence_map(documents, texts, sections, characters)
        snapshot.outline_alignment = self._alignment_map(outline, texts, sections)
        snapshot.recent_edits = self._recent_edits(edit_log, {doc.id for doc in documents})
        snapshot.narrative_markers = self._narrative_markers([focused] if focused is not None else documents)

        character_map = {char.id: char for char in characters}
        outline_map = {node.id: node for node in outline}
        self._last_report = fit_to_budget(
            snapshot,
            budget=self._config.token_budget,
            policy=self._config.degradation,
            estimate=lambda item: self._cost_model.estimate(item, character_map, outline_map),
            context=DegradationContext(
                roles={char.id: char.role for char in characters},
                focus_document_id=snapshot.document_id,
                shortened_summary_chars=self._config.shortened_summary_chars,
            ),
        )
        return snapshot

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _store_lookup(getter: Callable[[str], object], entity_id: str):
        try:
            return getter(entity_id)
        except KeyError:
            return None

    def _project_summary(
        self,
        description: str,
        documents: Sequence[Document],
        characters: Sequence[Character],
        outline: Sequence[OutlineNode],
    ) -> str:
        total_words = sum(doc.word_count for doc in documents)
        counts = (
            f"{len(documents)} document(s), {total_words} word(s), "
            f"{len(characters)} character(s), {len(outline)} outline node(s)."
        )
        description = description.strip()
        return f"{description}\n{counts}" if description else counts

    def _document_summary(self, document: Document, text: str) -> str:
        excerpt = summarize_text(text, self._config.document_summary_chars)
        header = f"{document.title} ({document.word_count} words)"
        return f"{header}: {excerpt}" if excerpt else header

    def _focus_window(self, text: str, position: int | None) -> str:
        size = self._config.recent_window_chars
        if len(text) <= size:
            return text
        if position is None:
            return text[-size:]
        start = max(0, min(position - size // 2, len(text) - size))
        return text[start : start + size]

    def _active_outline(self, outline: Sequence[OutlineNode], document_id: str) -> list[str]:
        selected: set[str] = set()
        for node in outline:
            if document_id in node.linked_document_ids:
                selected.add(node.id)
                selected.update(ancestor.id for ancestor in self._store.outline_ancestors(node.id))
        return [node.id for node in outline if node.id in selected]

    def _section_summaries(
        self,
        document: Document,
        sections: Sequence[Section],
        characters: Sequence[Character],
        outline: Sequence[OutlineNode],
    ) -> list[SectionSummary]:
        summaries: list[SectionSummary] = []
        for section in sections[: self._config.max_section_summaries]:
            summaries.append(
                SectionSummary(
                    section_id=section.section_id,
                    document_id=document.id,
                    title=section.title,
                    summary=summarize_text(section.text, self._config.section_summary_chars),
                    character_ids=[
                        char.id
                        for char in characters
                        if any(name in section.text for name in char.surface_names())
                    ],
                    outline_ids=[node.id for node in outline if section.section_id in node.linked_section_ids],
                    word_count=len(section.text.split()),
                )
            )
        return summaries

    def _presence_map(
        self,
        documents: Sequence[Document],
        texts: Mapping[str, str],
        sections: Mapping[str, Sequence[Section]],
        characters: Sequence[Character],
    ) -> dict[str, PresenceEntry]:
        presence: dict[str, PresenceEntry] = {}
        for character in characters:
            entry = PresenceEntry()
            for document in documents:
                mentions = find_mentions(texts[document.id], character.surface_names())
                if not mentions:
                    continue
                entry.document_ids.append(document.id)
                entry.mention_count += len(mentions)
                entry.last_mention_position = mentions[-1][0]
                for offset, _ in mentions:
                    section_id = _section_at(sections[document.id], offset)
                    if section_id is not None and section_id not in entry.section_ids:
                        entry.section_ids.append(section_id)
            for record in self._store.presences_for(character.id):
                if record.document_id not in texts:
                    continue
                if record.document_id not in entry.document_ids:
                    entry.document_ids.append(record.document_id)
                if record.section_id and record.section_id not in entry.section_ids:
                    entry.section_ids.append(record.section_id)
            if entry.document_ids:
                presence[character.id] = entry
        return presence

    def _alignment_map(
        self,
        outline: Sequence[OutlineNode],
        texts: Mapping[str, str],
        sections: Mapping[str, Sequence[Section]],
    ) -> dict[str, OutlineAlignment]:
        alignment: dict[str, OutlineAlignment] = {}
        for node in outline:
            if not node.linked_document_ids:
                continue
            document_ids = [doc_id for doc_id in node.linked_document_ids if doc_id in texts]
            section_index = {
                section.section_id: section for doc_id in document_ids for section in sections[doc_id]
            }
            linked_sections = [section_index[sid] for sid in node.linked_section_ids if sid in section_index]
            if linked_sections:
                word_count = sum(len(section.text.split()) for section in linked_sections)
            else:
                word_count = sum(len(texts[doc_id].split()) for doc_id in document_ids)
            target = node.metadata.word_count_target
            if node.status is OutlineNodeStatus.COMPLETE or (target and word_count >= target):
                status = "complete"
            elif word_count == 0:
                status = "not_started"
            else:
                status = "partial"
            alignment[node.id] = OutlineAlignment(
                document_ids=document_ids,
                section_ids=list(node.linked_section_ids),
                status=status,
                word_count=word_count,
            )
        return alignment

    def _recent_edits(self, edit_log: EditEventLog | None, document_ids: set[str]):
        if edit_log is None:
            return []
        edits = [edit for edit in edit_log.recent() if edit.document_id in document_ids]
        return edits[: self._config.max_recent_edits]

    def _narrative_markers(self, documents: Sequence[Document]) -> list[NarrativeMarker]:
        markers: list[NarrativeMarker] = []
        for document in documents:
            for marker in detect_markers(document.content):
                markers.append(
                    NarrativeMarker(document_id=document.id, position=marker.position, kind=marker.kind, label=marker.label)
                )
        return markers[: self._config.max_narrative_markers]


def _section_at(sections: Sequence[Section], offset: int) -> str | None:
    for section in sections:
        if section.start <= offset <= section.end:
            return section.section_id
    return None


__all__ = [
    "BuilderConfig",
    "ContextBuilder",
    "ContextFocus",
    "find_mentions",
    "summarize_text",
]
