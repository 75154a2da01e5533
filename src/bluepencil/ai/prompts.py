"""System prompts, context rendering, and quick actions for the writing assistant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

from ..context.types import ContextSnapshot, Staleness
from ..core.models import Character, OutlineNode

AssistantMode = Literal["editor", "coach"]

_CITATION_HELP = """When referencing project elements, use citations in this format:
- [doc:ID] for documents
- [char:ID] for characters
- [outline:ID] for outline nodes"""

SYSTEM_PROMPTS: dict[str, str] = {
    "editor": f"""You are an expert fiction editor working with an author on their manuscript. Your role is to provide:
- Grammar, spelling, and punctuation corrections
- Style and prose quality improvements
- Consistency checks against the project context
- Line-level feedback with specific, actionable suggestions

When suggesting edits, always explain WHY the change improves the writing. Be encouraging but honest.

When proposing a concrete replacement, add one block in exactly this form:
```suggested-edit
Original: <text to replace>
Suggested: <replacement text>
Explanation: <why it is better>
```

{_CITATION_HELP}

Keep responses focused and practical. Prioritize the most impactful suggestions.""",
    "coach": f"""You are a writing coach and story consultant helping an author develop their craft. Your role is to provide:
- Big-picture story guidance (structure, pacing, arc)
- Character development advice
- Theme and subtext analysis
- Craft techniques and suggestions

Focus on the WHY behind storytelling choices. Help the author understand the principles so they can apply them independently.

{_CITATION_HELP}

Be supportive but challenge the author to grow. Ask thought-provoking questions when appropriate.""",
}


def system_prompt_for(mode: str) -> str:
    try:
        return SYSTEM_PROMPTS[mode]
    except KeyError:
        raise ValueError(f"Unknown assistant mode: {mode!r}") from None


@dataclass(slots=True, frozen=True)
class QuickAction:
    type: str
    label: str
    description: str
    prompt: str


QUICK_ACTIONS: tuple[QuickAction, ...] = (
    QuickAction(
        "grammar_check",
        "Grammar",
        "Check for grammar and spelling issues",
        "Review the following text for grammar, spelling, and punctuation errors. Suggest corrections with explanations.",
    ),
    QuickAction(
        "style_improve",
        "Style",
        "Improve prose style and flow",
        "Analyze the following text for style improvements. Suggest ways to make the prose more engaging, varied, "
        "and polished while maintaining the author's voice.",
    ),
    QuickAction(
        "consistency_check",
        "Consistency",
        "Check for inconsistencies",
        "Review the text for consistency issues: character behavior, timeline, world details, and narrative voice. "
        "Flag any inconsistencies with the project context provided.",
    ),
    QuickAction(
        "pacing_analysis",
        "Pacing",
        "Analyze scene pacing",
        "Analyze the pacing of this text. Is it moving too fast or too slow? Are there areas that drag or feel "
        "rushed? Provide specific suggestions.",
    ),
    QuickAction(
        "dialogue_review",
        "Dialogue",
        "Review dialogue quality",
        "Review the dialogue in this text. Is it natural? Does each character have a distinct voice? Are there any "
        "talking head issues? Suggest improvements.",
    ),
    QuickAction(
        "character_voice",
        "Voice",
        "Check character voice consistency",
        "Analyze the character voices in this text against their profiles. Are they consistent with their "
        "established personalities, speech patterns, and backgrounds?",
    ),
)


def quick_actions_for(mode: str) -> tuple[QuickAction, ...]:
    """Editor mode gets the line-level actions; coach mode the story-level ones."""

    system_prompt_for(mode)
    return QUICK_ACTIONS[:3] if mode == "editor" else QUICK_ACTIONS[3:]


def quick_action(action_type: str) -> QuickAction:
    for action in QUICK_ACTIONS:
        if action.type == action_type:
            return action
    raise KeyError(action_type)


def render_context(context: ContextSnapshot | None) -> str:
    if context is None:
        return "No project context is available yet."
    sections: list[str] = []
    if context.project_summary:
        sections.append(f"## Project Overview\n{context.project_summary}")
    if context.document_summary:
        sections.append(f"## Current Document\n{context.document_summary}")
    if context.section_summaries:
        lines = [f"- {summary.title}: {summary.summary}" for summary in context.section_summaries if summary.summary]
        if lines:
            sections.append("## Sections\n" + "\n".join(lines))
    if context.active_character_ids:
        sections.append(
            "## Relevant Characters\nCharacter IDs in scene: " + ", ".join(context.active_character_ids)
        )
    if context.active_outline_ids:
        sections.append("## Relevant Outline Nodes\nOutline node IDs: " + ", ".join(context.active_outline_ids))
    if context.recent_edits:
        changes = "\n".join(f'- {edit.change_type}: "{edit.snippet}"' for edit in context.recent_edits[:5])
        sections.append(f"## Recent Changes\n{changes}")
    if context.narrative_markers:
        markers = "\n".join(f"- {marker.kind.replace('_', ' ')}: {marker.label}" for marker in context.narrative_markers)
        sections.append(f"## Narrative Markers\n{markers}")
    if context.staleness in (Staleness.STALE, Staleness.OUTDATED):
        sections.append(
            f"Note: Project context may be {context.staleness.value}. "
            "Some details might not reflect the latest changes."
        )
    return "\n\n".join(sections)


def render_characters(characters: Sequence[Character]) -> str:
    if not characters:
        return ""
    blocks: list[str] = []
    for char in characters:
        parts = [f"### {char.name} [char:{char.id}]", f"- Role: {char.role.value}"]
        if char.aliases:
            parts.append(f"- Also known as: {', '.join(char.aliases)}")
        if char.description:
            parts.append(f"- Description: {char.description}")
        if char.attributes.personality:
            parts.append(f"- Personality: {char.attributes.personality}")
        if char.attributes.speech:
            parts.append(f"- Speech pattern: {char.attributes.speech}")
        blocks.append("\n".join(parts))
    return "## Characters\n" + "\n\n".join(blocks)


def render_outline(nodes: Sequence[OutlineNode]) -> str:
    if not nodes:
        return ""
    blocks: list[str] = []
    for node in nodes:
        parts = [f"### {node.type.value.upper()}: {node.title} [outline:{node.id}]", f"- Status: {node.status.value}"]
        if node.description:
            parts.append(f"- Description: {node.description}")
        if node.metadata.pov:
            parts.append(f"- POV: {node.metadata.pov}")
        if node.metadata.location:
            parts.append(f"- Location: {node.metadata.location}")
        if node.metadata.tension is not None:
            parts.append(f"- Tension level: {node.metadata.tension}/10")
        blocks.append("\n".join(parts))
    return "## Story Structure\n" + "\n\n".join(blocks)


def render_user_turn(
    message: str,
    context: ContextSnapshot | None,
    *,
    characters: Sequence[Character] = (),
    outline_nodes: Sequence[OutlineNode] = (),
    selected_text: str | None = None,
) -> str:
    parts: list[str] = ["# Project Context", render_context(context)]
    character_block = render_characters(characters)
    if character_block:
        parts.append(character_block)
    outline_block = render_outline(outline_nodes)
    if outline_block:
        parts.append(outline_block)
    if selected_text:
        parts.extend(["# Selected Text for Review", f"```\n{selected_text}\n```"])
    parts.extend(["# Author's Request", message])
    return "\n\n".join(parts)


__all__ = [
    "AssistantMode",
    "QUICK_ACTIONS",
    "QuickAction",
    "SYSTEM_PROMPTS",
    "quick_action",
    "quick_actions_for",
    "render_characters",
    "render_context",
    "render_outline",
    "render_user_turn",
    "system_prompt_for",
]
