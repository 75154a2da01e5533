"""Plain-text helpers over the document content tree."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterator, Literal

from .models import ContentNode, DocumentContent

__all__ = [
    "Block",
    "Section",
    "MarkerKind",
    "DetectedMarker",
    "iter_blocks",
    "extract_text",
    "count_words",
    "document_from_text",
    "split_sections",
    "detect_markers",
]

MarkerKind = Literal["scene_break", "chapter_start", "pov_shift", "timeline_jump"]

_BLOCK_SEPARATOR = "\n"
_SCENE_BREAK_TEXT = re.compile(r"^\s*(\*\s*\*\s*\*|-{3,}|_{3,}|#)\s*$")
_POV_LINE = re.compile(r"^\s*POV\s*:\s*(?P<label>.+?)\s*$", re.IGNORECASE)
_TIMELINE_LINE = re.compile(
    r"^\s*(?P<label>(?:\d+\s+(?:hours?|days?|weeks?|months?|years?)\s+(?:later|earlier|before|after))"
    r"|(?:meanwhile)|(?:the next (?:day|morning|night)))\b.*$",
    re.IGNORECASE,
)


@dataclass(slots=True)
class Block:
    """A top-level block flattened to text with its offset in the extracted text."""

    type: str
    text: str
    offset: int
    attrs: dict = field(default_factory=dict)


@dataclass(slots=True)
class Section:
    section_id: str
    title: str
    start: int
    end: int
    text: str


@dataclass(slots=True)
class DetectedMarker:
    kind: MarkerKind
    position: int
    label: str


def _leaf_text(node: ContentNode) -> str:
    if node.text is not None:
        return node.text
    if node.type == "hard_break":
        return "\n"
    return "".join(_leaf_text(child) for child in node.children)


def _flatten(nodes: list[ContentNode]) -> Iterator[ContentNode]:
    for node in nodes:
        # Wrapper containers (lists, blockquotes) contribute their inner blocks.
        if node.children and all(not child.is_leaf and child.type != "hard_break" for child in node.children):
            yield from _flatten(node.children)
        else:
            yield node


def iter_blocks(content: DocumentContent | None) -> Iterator[Block]:
    """Yield text blocks in document order with offsets into :func:`extract_text`."""

    if content is None:
        return
    offset = 0
    first = True
    for node in _flatten(content.children):
        if not first:
            offset += len(_BLOCK_SEPARATOR)
        first = False
        text = _leaf_text(node)
        yield Block(type=node.type, text=text, offset=offset, attrs=dict(node.attrs))
        offset += len(text)


def extract_text(content: DocumentContent | None) -> str:
    return _BLOCK_SEPARATOR.join(block.text for block in iter_blocks(content))


def count_words(text: str) -> int:
    return len(text.split())


def document_from_text(text: str) -> DocumentContent:
    """Build a paragraph-per-line content tree; ``***`` lines become scene breaks."""

    children: list[ContentNode] = []
    for line in (text or "").split("\n"):
        if line.strip() in {"***", "* * *"}:
            children.append(ContentNode(type="scene_break"))
        elif line.startswith("#"):
            level = len(line) - len(line.lstrip("#"))
            children.append(
                ContentNode(
                    type="heading",
                    attrs={"level": min(level, 4)},
                    children=[ContentNode(type="text", text=line[level:].strip())],
                )
            )
        elif line:
            children.append(ContentNode(type="paragraph", children=[ContentNode(type="text", text=line)]))
        else:
            children.append(ContentNode(type="paragraph"))
    return DocumentContent(children=children or [ContentNode(type="paragraph")])


def split_sections(document_id: str, content: DocumentContent | None) -> list[Section]:
    """Split a document into heading-delimited sections.

    Text before the first heading forms an untitled leading section when non-empty.
    """

    sections: list[Section] = []
    current_title: str | None = None
    current_start = 0
    parts: list[str] = []
    end = 0

    def _close() -> None:
        body = _BLOCK_SEPARATOR.join(parts).strip()
        if current_title is None and not body:
            return
        index = len(sections)
        sections.append(
            Section(
                section_id=f"{document_id}:s{index}",
                title=current_title or "Opening",
                start=current_start,
                end=end,
                text=body,
            )
        )

    for block in iter_blocks(content):
        if block.type == "heading":
            _close()
            current_title = block.text.strip() or "Untitled section"
            current_start = block.offset
            parts = []
        else:
            parts.append(block.text)
        end = block.offset + len(block.text)
    _close()
    return sections


def detect_markers(content: DocumentContent | None) -> list[DetectedMarker]:
    """Best-effort narrative markers derived from structure and conventional lines."""

    markers: list[DetectedMarker] = []
    for block in iter_blocks(content):
        if block.type == "scene_break" or (block.type != "heading" and _SCENE_BREAK_TEXT.match(block.text) and block.text.strip()):
            markers.append(DetectedMarker("scene_break", block.offset, "Scene break"))
            continue
        if block.type == "heading":
            level = int(block.attrs.get("level", 1) or 1)
            if level <= 2:
                markers.append(DetectedMarker("chapter_start", block.offset, block.text.strip() or "Chapter"))
            continue
        pov = _POV_LINE.match(block.text)
        if pov:
            markers.append(DetectedMarker("pov_shift", block.offset, pov.group("label")))
            continue
        jump = _TIMELINE_LINE.match(block.text)
        if jump:
            markers.append(DetectedMarker("timeline_jump", block.offset, jump.group("label")))
    return markers
