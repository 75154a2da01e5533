"""Tests for snapshot construction and token-budget degradation."""

from __future__ import annotations

import pytest

from bluepencil.context.budget import (
    DEFAULT_DEGRADATION_STEPS,
    DegradationContext,
    DegradationPolicy,
    fit_to_budget,
)
from bluepencil.context.builder import BuilderConfig, ContextBuilder, ContextFocus, find_mentions, summarize_text
from bluepencil.context.edit_log import EditEventLog
from bluepencil.context.types import CompressionLevel, ContextSnapshot, RecentEdit
from bluepencil.core.models import CharacterRole, OutlineNodeStatus, OutlineNodeMetadata
from bluepencil.store.entity_store import EntityStore


def _builder(store: EntityStore, clock, **config) -> ContextBuilder:
    return ContextBuilder(store, config=BuilderConfig(**config), clock=clock)


def test_unknown_project_yields_empty_snapshot(store: EntityStore, clock) -> None:
    snapshot = _builder(store, clock).build(ContextFocus(project_id="missing"), version=3)

    assert snapshot.id == "missing:v3"
    assert snapshot.version == 3
    assert snapshot.document_id is None
    assert snapshot.active_character_ids == []
    assert snapshot.project_summary == ""


def test_empty_project_summary(store: EntityStore, clock) -> None:
    project = store.create_project("Blank")
    snapshot = _builder(store, clock).build(ContextFocus(project_id=project.id))

    assert snapshot.project_summary == "0 document(s), 0 word(s), 0 character(s), 0 outline node(s)."
    assert snapshot.compression_level is CompressionLevel.FULL
    assert snapshot.created_at == clock()


def test_focused_build_collects_context(store: EntityStore, clock, story: dict) -> None:
    chapter = story["chapter"]
    snapshot = _builder(store, clock).build(ContextFocus(project_id=story["project"].id, document_id=chapter.id))

    assert snapshot.document_id == chapter.id
    assert snapshot.document_summary.startswith(f"Chapter One ({chapter.word_count} words): ")
    # Role order: protagonist before minor; Gull is never mentioned.
    assert snapshot.active_character_ids == [story["mara"].id, story["tom"].id]
    assert snapshot.active_outline_ids == [story["act"].id, story["scene"].id]
    assert [summary.title for summary in snapshot.section_summaries] == ["Arrival", "Storm"]
    assert snapshot.section_summaries[0].character_ids == [story["mara"].id, story["tom"].id]
    assert snapshot.section_summaries[1].character_ids == [story["mara"].id]
    assert [marker.kind for marker in snapshot.narrative_markers] == ["chapter_start", "scene_break", "chapter_start"]


def test_presence_counts_non_overlapping_mentions(store: EntityStore, clock, story: dict) -> None:
    snapshot = _builder(store, clock).build(ContextFocus(project_id=story["project"].id))

    mara = snapshot.presence[story["mara"].id]
    tom = snapshot.presence[story["tom"].id]
    assert mara.document_ids == [story["chapter"].id]
    assert mara.mention_count == 2
    assert tom.mention_count == 1
    assert len(mara.section_ids) == 2
    assert story["gull"].id not in snapshot.presence


def test_unfocused_build_uses_leading_characters(store: EntityStore, clock, story: dict) -> None:
    snapshot = _builder(store, clock, max_unfocused_characters=2).build(ContextFocus(project_id=story["project"].id))

    assert snapshot.document_id is None
    assert snapshot.active_character_ids == [story["mara"].id, story["tom"].id]
    assert snapshot.section_summaries == []


def test_alignment_statuses(store: EntityStore, clock, story: dict) -> None:
    project_id = story["project"].id
    planned = store.create_outline_node(project_id, "Planned")
    store.link_outline_to_document(planned.id, story["notes"].id)
    done = store.create_outline_node(project_id, "Done")
    store.link_outline_to_document(done.id, story["notes"].id)
    store.update_outline_node(done.id, status=OutlineNodeStatus.COMPLETE)
    targeted = store.create_outline_node(project_id, "Targeted")
    store.link_outline_to_document(targeted.id, story["chapter"].id)
    store.update_outline_node(targeted.id, metadata=OutlineNodeMetadata(word_count_target=5))

    snapshot = _builder(store, clock).build(ContextFocus(project_id=project_id))
    alignment = snapshot.outline_alignment

    assert alignment[story["scene"].id].status == "partial"
    assert alignment[planned.id].status == "not_started"
    assert alignment[done.id].status == "complete"
    assert alignment[targeted.id].status == "complete"
    assert story["act"].id not in alignment


def test_recent_edits_come_from_the_log(store: EntityStore, clock, story: dict) -> None:
    log = EditEventLog()
    log.record(story["chapter"].id, "insert", 4, "storm")
    log.record("foreign-doc", "insert", 0, "ignored")

    snapshot = _builder(store, clock).build(
        ContextFocus(project_id=story["project"].id, document_id=story["chapter"].id), edit_log=log
    )

    assert [edit.snippet for edit in snapshot.recent_edits] == ["storm"]


def test_build_is_deterministic(store: EntityStore, clock, story: dict) -> None:
    builder = _builder(store, clock)
    focus = ContextFocus(project_id=story["project"].id, document_id=story["chapter"].id, cursor=10)
    assert builder.build(focus, version=2) == builder.build(focus, version=2)


def test_focus_window_limits_active_characters(store: EntityStore, clock) -> None:
    project = store.create_project("Long")
    store.create_character(project.id, "Early", "supporting")
    late = store.create_character(project.id, "Late", "supporting")
    text = "Early arrives. " + "filler " * 200 + "Late arrives."
    document = store.create_document(project.id, "Draft", text)
    builder = _builder(store, clock, recent_window_chars=100)

    tail = builder.build(ContextFocus(project_id=project.id, document_id=document.id))
    assert tail.active_character_ids == [late.id]

    head = builder.build(ContextFocus(project_id=project.id, document_id=document.id, cursor=0))
    assert late.id not in head.active_character_ids
    assert len(head.active_character_ids) == 1


# ----------------------------------------------------------------------
# Budget
# ----------------------------------------------------------------------
def test_within_budget_is_not_degraded(store: EntityStore, clock, story: dict) -> None:
    builder = _builder(store, clock, token_budget=100_000)
    snapshot = builder.build(ContextFocus(project_id=story["project"].id, document_id=story["chapter"].id))

    assert snapshot.compression_level is CompressionLevel.FULL
    assert snapshot.applied_steps == ()
    assert builder.last_report is not None and builder.last_report.verdict == "ok"
    assert snapshot.token_estimate > 0


@pytest.mark.parametrize("budget", [1, 20, 40, 60, 80, 100, 120, 160, 200])
def test_degradation_is_ordered_and_monotonic(store: EntityStore, clock, story: dict, budget: int) -> None:
    builder = _builder(store, clock, token_budget=budget)
    focus = ContextFocus(project_id=story["project"].id, document_id=story["chapter"].id)
    full = _builder(store, clock, token_budget=100_000).build(focus)

    snapshot = builder.build(focus)
    applied = list(snapshot.applied_steps)

    assert applied == list(DEFAULT_DEGRADATION_STEPS[: len(applied)])
    assert snapshot.compression_level.rank == min(len(applied), 3)
    if full.token_estimate > budget:
        assert snapshot.compression_level.rank > CompressionLevel.FULL.rank
    report = builder.last_report
    assert report is not None
    assert report.verdict == ("ok" if not applied else "degraded" if snapshot.token_estimate <= budget else "over_budget")
    if story["tom"].id not in snapshot.active_character_ids:
        assert "drop_secondary_characters" in applied
    if story["mara"].id not in snapshot.active_character_ids:
        assert applied.index("drop_secondary_characters") < applied.index("drop_primary_characters")


def test_exhausted_policy_reports_over_budget(store: EntityStore, clock, story: dict) -> None:
    builder = _builder(store, clock, token_budget=1)
    snapshot = builder.build(ContextFocus(project_id=story["project"].id, document_id=story["chapter"].id))

    assert snapshot.compression_level is CompressionLevel.MINIMAL
    assert snapshot.applied_steps == DEFAULT_DEGRADATION_STEPS
    assert snapshot.active_character_ids == []
    assert snapshot.section_summaries == []
    assert builder.last_report is not None and builder.last_report.verdict == "over_budget"


def test_secondary_characters_drop_before_primary() -> None:
    snapshot = ContextSnapshot(id="p:v1", project_id="p", document_id=None, version=1)
    snapshot.active_character_ids = ["hero", "villain", "extra", "cameo"]
    roles = {
        "hero": CharacterRole.PROTAGONIST,
        "villain": CharacterRole.ANTAGONIST,
        "extra": CharacterRole.MINOR,
        "cameo": CharacterRole.MENTIONED,
    }
    def estimate(item: ContextSnapshot) -> int:
        return len(item.active_character_ids)

    report = fit_to_budget(
        snapshot,
        budget=3,
        policy=DegradationPolicy(("drop_secondary_characters", "drop_primary_characters")),
        estimate=estimate,
        context=DegradationContext(roles=roles),
    )

    assert report.verdict == "degraded"
    assert snapshot.active_character_ids == ["hero", "villain"]
    assert snapshot.compression_level is CompressionLevel.STANDARD


def test_low_priority_edits_keep_focused_document() -> None:
    snapshot = ContextSnapshot(id="p:v1", project_id="p", document_id="a", version=1)
    snapshot.recent_edits = [
        RecentEdit(document_id="b", change_type="insert", position=0, snippet="x"),
        RecentEdit(document_id="a", change_type="insert", position=0, snippet="y"),
    ]
    fit_to_budget(
        snapshot,
        budget=0,
        policy=DegradationPolicy(("drop_low_priority_edits",)),
        estimate=lambda item: len(item.recent_edits),
        context=DegradationContext(roles={}, focus_document_id="a"),
    )
    assert [edit.document_id for edit in snapshot.recent_edits] == ["a"]


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        DegradationPolicy(("drop_everything",))
    with pytest.raises(ValueError):
        DegradationPolicy(("drop_primary_characters", "drop_secondary_characters"))
    assert DegradationPolicy.from_names(None).steps == DEFAULT_DEGRADATION_STEPS
    assert DegradationPolicy.from_names([" drop_narrative_markers "]).steps == ("drop_narrative_markers",)


def test_compression_level_saturates() -> None:
    assert CompressionLevel.FULL.degrade() is CompressionLevel.STANDARD
    assert CompressionLevel.MINIMAL.degrade() is CompressionLevel.MINIMAL


# ----------------------------------------------------------------------
# Text helpers
# ----------------------------------------------------------------------
def test_summarize_text_keeps_whole_sentences() -> None:
    text = "First sentence here. Second sentence follows. Third."
    assert summarize_text(text, 100) == text
    assert summarize_text(text, 30) == "First sentence here."
    assert summarize_text("Unbroken" * 10, 9) == "Unbroken…"


def test_find_mentions_prefers_longest_names() -> None:
    text = "Old Tom met Tom and Tomas."
    assert find_mentions(text, ["Tom", "Old Tom"]) == [(0, "Old Tom"), (12, "Tom"), (20, "Tom")]
