"""Tests for system prompts, quick actions, and context rendering."""

from __future__ import annotations

import pytest

from bluepencil.ai.prompts import (
    QUICK_ACTIONS,
    SYSTEM_PROMPTS,
    quick_action,
    quick_actions_for,
    render_context,
    render_user_turn,
    system_prompt_for,
)
from bluepencil.context.types import ContextSnapshot, RecentEdit, Staleness
from bluepencil.core.models import Character, CharacterRole, OutlineNode, OutlineNodeMetadata, OutlineNodeType


def test_each_mode_has_a_prompt_with_citation_help() -> None:
    for mode in ("editor", "coach"):
        prompt = system_prompt_for(mode)
        assert "[doc:ID]" in prompt
        assert "[char:ID]" in prompt
        assert "[outline:ID]" in prompt
    assert "```suggested-edit" in SYSTEM_PROMPTS["editor"]
    with pytest.raises(ValueError):
        system_prompt_for("critic")


def test_quick_actions_split_by_mode() -> None:
    assert [action.type for action in quick_actions_for("editor")] == [
        "grammar_check",
        "style_improve",
        "consistency_check",
    ]
    assert [action.type for action in quick_actions_for("coach")] == [
        "pacing_analysis",
        "dialogue_review",
        "character_voice",
    ]
    assert len(QUICK_ACTIONS) == 6
    assert quick_action("pacing_analysis").label == "Pacing"
    with pytest.raises(KeyError):
        quick_action("rewrite_everything")


def test_render_context_without_snapshot() -> None:
    assert render_context(None) == "No project context is available yet."


def test_render_context_sections_and_staleness_note() -> None:
    snapshot = ContextSnapshot(
        id="p:v1",
        project_id="p",
        document_id="d",
        version=1,
        project_summary="1 document(s).",
        document_summary="Draft (3 words): Hello there friend.",
        active_character_ids=["c1"],
        recent_edits=[RecentEdit(document_id="d", change_type="insert", position=0, snippet="Hello")],
        staleness=Staleness.STALE,
    )

    rendered = render_context(snapshot)

    assert rendered.startswith("## Project Overview\n1 document(s).")
    assert "## Current Document\nDraft (3 words)" in rendered
    assert "Character IDs in scene: c1" in rendered
    assert '- insert: "Hello"' in rendered
    assert rendered.endswith("Some details might not reflect the latest changes.")

    snapshot.staleness = Staleness.RECENT
    assert "may be" not in render_context(snapshot)


def test_render_user_turn_order() -> None:
    character = Character(
        id="c1", project_id="p", name="Mara", role=CharacterRole.PROTAGONIST, aliases=["The Keeper"]
    )
    node = OutlineNode(
        id="o1", project_id="p", title="Arrival", type=OutlineNodeType.SCENE, metadata=OutlineNodeMetadata(tension=7)
    )

    turn = render_user_turn(
        "Tighten this.",
        None,
        characters=[character],
        outline_nodes=[node],
        selected_text="She climbed.",
    )

    headings = ["# Project Context", "## Characters", "## Story Structure", "# Selected Text for Review", "# Author's Request"]
    positions = [turn.index(heading) for heading in headings]
    assert positions == sorted(positions)
    assert "### Mara [char:c1]" in turn
    assert "- Also known as: The Keeper" in turn
    assert "### SCENE: Arrival [outline:o1]" in turn
    assert "- Tension level: 7/10" in turn
    assert "```\nShe climbed.\n```" in turn
    assert turn.endswith("Tighten this.")
