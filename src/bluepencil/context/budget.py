"""Token budget estimation and the ordered degradation policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal, Mapping

from ..ai.client import TokenCounterRegistry
from ..core.models import Character, CharacterRole, OutlineNode
from .types import CompressionLevel, ContextSnapshot

LOGGER = logging.getLogger(__name__)

BudgetVerdict = Literal["ok", "degraded", "over_budget"]

DEFAULT_TOKEN_BUDGET = 4_000
SHORTENED_SUMMARY_CHARS = 80

DEFAULT_DEGRADATION_STEPS: tuple[str, ...] = (
    "shorten_sections",
    "drop_low_priority_edits",
    "drop_secondary_characters",
    "drop_supporting_characters",
    "drop_section_summaries",
    "drop_primary_characters",
)


@dataclass(slots=True)
class DegradationContext:
    """Lookups a degradation step may consult while trimming a snapshot."""

    roles: Mapping[str, CharacterRole]
    focus_document_id: str | None = None
    shortened_summary_chars: int = SHORTENED_SUMMARY_CHARS


DegradationStep = Callable[[ContextSnapshot, DegradationContext], None]


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)].rstrip() + "…"


def _shorten_sections(snapshot: ContextSnapshot, ctx: DegradationContext) -> None:
    for summary in snapshot.section_summaries:
        summary.summary = _truncate(summary.summary, ctx.shortened_summary_chars)
    snapshot.document_summary = _truncate(snapshot.document_summary, ctx.shortened_summary_chars * 2)


def _drop_low_priority_edits(snapshot: ContextSnapshot, ctx: DegradationContext) -> None:
    if ctx.focus_document_id is not None:
        kept = [edit for edit in snapshot.recent_edits if edit.document_id == ctx.focus_document_id]
    else:
        kept = snapshot.recent_edits[:1]
    snapshot.recent_edits = kept


def _drop_characters(snapshot: ContextSnapshot, ctx: DegradationContext, predicate: Callable[[CharacterRole], bool]) -> None:
    dropped = {
        char_id
        for char_id in snapshot.active_character_ids
        if predicate(ctx.roles.get(char_id, CharacterRole.MENTIONED))
    }
    dropped.update(
        char_id for char_id in snapshot.presence if predicate(ctx.roles.get(char_id, CharacterRole.MENTIONED))
    )
    if not dropped:
        return
    snapshot.active_character_ids = [char_id for char_id in snapshot.active_character_ids if char_id not in dropped]
    snapshot.presence = {char_id: entry for char_id, entry in snapshot.presence.items() if char_id not in dropped}
    for summary in snapshot.section_summaries:
        summary.character_ids = [char_id for char_id in summary.character_ids if char_id not in dropped]


def _drop_secondary_characters(snapshot: ContextSnapshot, ctx: DegradationContext) -> None:
    _drop_characters(snapshot, ctx, lambda role: role.is_secondary)


def _drop_supporting_characters(snapshot: ContextSnapshot, ctx: DegradationContext) -> None:
    _drop_characters(snapshot, ctx, lambda role: role is CharacterRole.SUPPORTING)


def _drop_primary_characters(snapshot: ContextSnapshot, ctx: DegradationContext) -> None:
    _drop_characters(snapshot, ctx, lambda role: role.is_primary)


def _drop_section_summaries(snapshot: ContextSnapshot, ctx: DegradationContext) -> None:
    snapshot.section_summaries = []


def _drop_narrative_markers(snapshot: ContextSnapshot, ctx: DegradationContext) -> None:
    snapshot.narrative_markers = []


def _drop_outline_alignment(snapshot: ContextSnapshot, ctx: DegradationContext) -> None:
    snapshot.outline_alignment = {}


DEGRADATION_STEPS: dict[str, DegradationStep] = {
    "shorten_sections": _shorten_sections,
    "drop_low_priority_edits": _drop_low_priority_edits,
    "drop_secondary_characters": _drop_secondary_characters,
    "drop_supporting_characters": _drop_supporting_characters,
    "drop_section_summaries": _drop_section_summaries,
    "drop_primary_characters": _drop_primary_characters,
    "drop_narrative_markers": _drop_narrative_markers,
    "drop_outline_alignment": _drop_outline_alignment,
}


@dataclass(slots=True)
class DegradationPolicy:
    """Ordered list of trimming steps applied while a snapshot is over budget.

    Every step applied moves the compression level one notch toward
    ``minimal``. Secondary characters must be dropped before primary ones.
    """

    steps: tuple[str, ...] = DEFAULT_DEGRADATION_STEPS

    def __post_init__(self) -> None:
        self.steps = tuple(self.steps)
        unknown = [name for name in self.steps if name not in DEGRADATION_STEPS]
        if unknown:
            raise ValueError(f"Unknown degradation step(s): {', '.join(unknown)}")
        if "drop_primary_characters" in self.steps and "drop_secondary_characters" in self.steps:
            if self.steps.index("drop_primary_characters") < self.steps.index("drop_secondary_characters"):
                raise ValueError("Secondary characters must be dropped before primary characters")

    @classmethod
    def from_names(cls, names: Iterable[str] | None) -> "DegradationPolicy":
        if not names:
            return cls()
        return cls(steps=tuple(str(name).strip() for name in names if str(name).strip()))


@dataclass(slots=True)
class BudgetReport:
    """Outcome of fitting a snapshot to its token budget."""

    verdict: BudgetVerdict
    estimated_tokens: int
    budget: int
    level: CompressionLevel
    applied_steps: tuple[str, ...] = field(default_factory=tuple)

    def as_payload(self) -> dict[str, object]:
        return {
            "verdict": self.verdict,
            "estimated_tokens": int(self.estimated_tokens),
            "budget": int(self.budget),
            "level": self.level.value,
            "applied_steps": list(self.applied_steps),
        }


class SnapshotCostModel:
    """Estimates the prompt cost of a snapshot from its assembled text."""

    def __init__(
        self,
        *,
        model_name: str | None = None,
        registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._model_name = model_name
        self._registry = registry or TokenCounterRegistry.global_instance()

    def estimate(
        self,
        snapshot: ContextSnapshot,
        characters: Mapping[str, Character],
        outline_nodes: Mapping[str, OutlineNode],
    ) -> int:
        text = assembled_text(snapshot, characters, outline_nodes)
        return self._registry.count(self._model_name, text)


def assembled_text(
    snapshot: ContextSnapshot,
    characters: Mapping[str, Character],
    outline_nodes: Mapping[str, OutlineNode],
) -> str:
    """Concatenate every piece of snapshot text that would reach the prompt."""

    parts: list[str] = [snapshot.project_summary, snapshot.document_summary]
    for summary in snapshot.section_summaries:
        parts.append(f"{summary.title}: {summary.summary}")
    for char_id in snapshot.active_character_ids:
        character = characters.get(char_id)
        if character is not None:
            parts.append(f"{character.name} ({character.role.value}) {' '.join(character.aliases)} {character.description}")
    for node_id in snapshot.active_outline_ids:
        node = outline_nodes.get(node_id)
        if node is not None:
            parts.append(f"{node.type.value}: {node.title} {node.description}")
    for char_id, entry in snapshot.presence.items():
        parts.append(f"{char_id} {entry.mention_count} {' '.join(entry.document_ids)}")
    for node_id, alignment in snapshot.outline_alignment.items():
        parts.append(f"{node_id} {alignment.status} {alignment.word_count}")
    for edit in snapshot.recent_edits:
        parts.append(f"{edit.change_type} {edit.snippet}")
    for marker in snapshot.narrative_markers:
        parts.append(f"{marker.kind} {marker.label}")
    return "\n".join(part for part in parts if part)


def fit_to_budget(
    snapshot: ContextSnapshot,
    *,
    budget: int,
    policy: DegradationPolicy,
    estimate: Callable[[ContextSnapshot], int],
    context: DegradationContext,
) -> BudgetReport:
    """Apply policy steps in order until ``estimate(snapshot) <= budget``.

    Mutates ``snapshot`` in place and stamps its compression level,
    token estimate, and applied steps.
    """

    level = CompressionLevel.FULL
    applied: list[str] = []
    tokens = estimate(snapshot)
    for name in policy.steps:
        if tokens <= budget:
            break
        DEGRADATION_STEPS[name](snapshot, context)
        applied.append(name)
        level = level.degrade()
        tokens = estimate(snapshot)

    if not applied:
        verdict: BudgetVerdict = "ok"
    elif tokens <= budget:
        verdict = "degraded"
    else:
        verdict = "over_budget"
        LOGGER.debug("Context snapshot still over budget after degradation: %s/%s tokens", tokens, budget)

    snapshot.compression_level = level
    snapshot.token_estimate = tokens
    snapshot.applied_steps = tuple(applied)
    return BudgetReport(verdict=verdict, estimated_tokens=tokens, budget=budget, level=level, applied_steps=tuple(applied))


__all__ = [
    "BudgetReport",
    "DEFAULT_DEGRADATION_STEPS",
    "DEFAULT_TOKEN_BUDGET",
    "DEGRADATION_STEPS",
    "DegradationContext",
    "DegradationPolicy",
    "SnapshotCostModel",
    "assembled_text",
    "fit_to_budget",
]
