"""Tests for citation and suggested-edit extraction."""

from __future__ import annotations

import pytest

from bluepencil.ai.parsing import (
    Citation,
    CitationRef,
    SuggestedEdit,
    resolve_citations,
    scan_citations,
    scan_suggested_edit,
)
from bluepencil.core.models import Character, OutlineNode


def test_duplicate_citations_collapse_in_order() -> None:
    refs = scan_citations("See [doc:abc] and [doc:abc] again plus [char:xyz]")
    assert refs == [CitationRef("document", "abc"), CitationRef("character", "xyz")]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("[[doc:a]]", [CitationRef("document", "a")]),
        ("[outline:node_1-b]", [CitationRef("outline", "node_1-b")]),
        ("[doc:]", []),
        ("[doc:a b]", []),
        ("[note:abc]", []),
        ("[DOC:abc]", []),
        ("[doc:abc", []),
        ("[char:é]", []),
        ("[doc:[char:x]]", [CitationRef("character", "x")]),
        ("no markers at all", []),
        ("", []),
    ],
)
def test_citation_edge_cases(text: str, expected: list[CitationRef]) -> None:
    assert scan_citations(text) == expected


def test_scanning_is_repeatable() -> None:
    text = "Compare [char:x] with [outline:y] and [doc:z]."
    assert scan_citations(text) == scan_citations(text)


def test_resolve_citations_uses_names_and_fallbacks() -> None:
    refs = scan_citations("[doc:d1] [char:c1] [outline:o1] [char:ghost]")
    citations = resolve_citations(
        refs,
        document_titles={"d1": "Chapter One"},
        characters=[Character(id="c1", project_id="p", name="Mara")],
        outline_nodes=[OutlineNode(id="o1", project_id="p", title="Arrival")],
    )
    assert citations == [
        Citation("document", "d1", "Chapter One"),
        Citation("character", "c1", "Mara"),
        Citation("outline", "o1", "Arrival"),
        Citation("character", "ghost", "Character ghost"),
    ]


def test_suggested_edit_fields_are_trimmed() -> None:
    reply = (
        "Try this:\n"
        "```suggested-edit\n"
        "Original:   The storm broke.  \n"
        "Suggested: The storm broke at last.\n"
        "Explanation:  Adds release.   \n"
        "```\n"
        "Good luck!"
    )
    assert scan_suggested_edit(reply) == SuggestedEdit(
        original="The storm broke.",
        suggested="The storm broke at last.",
        explanation="Adds release.",
    )


def test_suggested_edit_fields_may_span_lines() -> None:
    reply = "```suggested-edit\nOriginal: line one\nline two\nSuggested: merged\nExplanation: tighter\n```"
    edit = scan_suggested_edit(reply)
    assert edit is not None
    assert edit.original == "line one\nline two"


@pytest.mark.parametrize(
    "reply",
    [
        "No edits today.",
        "```suggested-edit\nOriginal: a\nSuggested: b\n```",
        "```suggested-edit\nSuggested: b\nOriginal: a\nExplanation: c\n```",
        "```suggested-edit\nOriginal: \nSuggested: b\nExplanation: c\n```",
        "```suggested-edit\nOriginal: a\nSuggested: b\nExplanation: c",
        "```suggested-edit Original: a\nSuggested: b\nExplanation: c\n```",
        "```python\nOriginal: a\nSuggested: b\nExplanation: c\n```",
    ],
)
def test_malformed_blocks_yield_nothing(reply: str) -> None:
    assert scan_suggested_edit(reply) is None


def test_first_well_formed_block_wins() -> None:
    reply = (
        "```suggested-edit\nOriginal: a\nExplanation: missing suggested\n```\n"
        "```suggested-edit\nOriginal: x\nSuggested: y\nExplanation: z\n```\n"
        "```suggested-edit\nOriginal: 1\nSuggested: 2\nExplanation: 3\n```"
    )
    assert scan_suggested_edit(reply) == SuggestedEdit("x", "y", "z")
