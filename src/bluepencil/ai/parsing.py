"""Deterministic extraction of citations and suggested edits from reply text.

Grammar::

    citation := "[" kind ":" ident "]"      kind  := "doc" | "char" | "outline"
    ident    := [A-Za-z0-9_-]+
    edit     := "```suggested-edit" blank* NL
                "Original:" text NL "Suggested:" text NL "Explanation:" text "```"

Both scanners are total: any input yields a (possibly empty) result and
nothing is raised for malformed markup.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal, Mapping

from ..core.models import Character, OutlineNode

CitationType = Literal["document", "character", "outline"]

CITATION_KINDS: dict[str, CitationType] = {
    "doc": "document",
    "char": "character",
    "outline": "outline",
}
_FALLBACK_LABELS: dict[CitationType, str] = {
    "document": "Document",
    "character": "Character",
    "outline": "Outline",
}
_IDENT_EXTRA = frozenset("_-")
EDIT_FENCE = "```suggested-edit"
_CLOSE_FENCE = "```"
_EDIT_LABELS = ("Original:", "Suggested:", "Explanation:")


@dataclass(slots=True, frozen=True)
class CitationRef:
    type: CitationType
    id: str


@dataclass(slots=True, frozen=True)
class Citation:
    type: CitationType
    id: str
    name: str


@dataclass(slots=True, frozen=True)
class SuggestedEdit:
    original: str
    suggested: str
    explanation: str


def _is_ident_char(char: str) -> bool:
    return char.isascii() and (char.isalnum() or char in _IDENT_EXTRA)


def _match_citation(text: str, start: int) -> tuple[CitationRef, int] | None:
    """Match a citation whose ``[`` is at ``start``; return it and the end offset."""

    colon = text.find(":", start + 1)
    if colon == -1:
        return None
    kind = CITATION_KINDS.get(text[start + 1 : colon])
    if kind is None:
        return None
    cursor = colon + 1
    while cursor < len(text) and _is_ident_char(text[cursor]):
        cursor += 1
    if cursor == colon + 1 or cursor >= len(text) or text[cursor] != "]":
        return None
    return CitationRef(type=kind, id=text[colon + 1 : cursor]), cursor + 1


def scan_citations(text: str) -> list[CitationRef]:
    """Return citations left to right, without overlap, deduplicated by (type, id)."""

    refs: list[CitationRef] = []
    seen: set[CitationRef] = set()
    index = text.find("[")
    while index != -1:
        matched = _match_citation(text, index)
        if matched is None:
            index = text.find("[", index + 1)
            continue
        ref, end = matched
        if ref not in seen:
            seen.add(ref)
            refs.append(ref)
        index = text.find("[", end)
    return refs


def resolve_citations(
    refs: Iterable[CitationRef],
    *,
    document_titles: Mapping[str, str] | None = None,
    characters: Iterable[Character] = (),
    outline_nodes: Iterable[OutlineNode] = (),
) -> list[Citation]:
    """Attach display names, falling back to ``"<Kind> <id>"`` for unknown ids."""

    names: dict[CitationType, dict[str, str]] = {
        "document": dict(document_titles or {}),
        "character": {char.id: char.name for char in characters},
        "outline": {node.id: node.title for node in outline_nodes},
    }
    return [
        Citation(type=ref.type, id=ref.id, name=names[ref.type].get(ref.id) or f"{_FALLBACK_LABELS[ref.type]} {ref.id}")
        for ref in refs
    ]


def _parse_edit_body(body: str) -> SuggestedEdit | None:
    lines = body.split("\n")
    values: list[list[str]] = []
    label_index = 0
    for line in lines:
        stripped = line.lstrip()
        if label_index < len(_EDIT_LABELS) and stripped.startswith(_EDIT_LABELS[label_index]):
            values.append([stripped[len(_EDIT_LABELS[label_index]) :]])
            label_index += 1
        elif values:
            values[-1].append(line)
        elif stripped:
            # Text before "Original:" is not part of the grammar.
            return None
    if label_index < len(_EDIT_LABELS):
        return None
    original, suggested, explanation = ("\n".join(parts).strip() for parts in values)
    if not (original and suggested and explanation):
        return None
    return SuggestedEdit(original=original, suggested=suggested, explanation=explanation)


def scan_suggested_edit(text: str) -> SuggestedEdit | None:
    """Return the first well-formed suggested-edit block, or ``None``."""

    search_from = 0
    while True:
        start = text.find(EDIT_FENCE, search_from)
        if start == -1:
            return None
        search_from = start + len(EDIT_FENCE)
        cursor = search_from
        while cursor < len(text) and text[cursor] in " \t\r":
            cursor += 1
        if cursor >= len(text) or text[cursor] != "\n":
            continue
        close = text.find(_CLOSE_FENCE, cursor)
        if close == -1:
            return None
        edit = _parse_edit_body(text[cursor + 1 : close])
        if edit is not None:
            return edit
        search_from = close + len(_CLOSE_FENCE)


__all__ = [
    "CITATION_KINDS",
    "Citation",
    "CitationRef",
    "CitationType",
    "EDIT_FENCE",
    "SuggestedEdit",
    "resolve_citations",
    "scan_citations",
    "scan_suggested_edit",
]
