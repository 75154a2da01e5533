"""Core domain types and text utilities."""

from .content import count_words, document_from_text, extract_text
from .ids import generate_id
from .models import (
    Character,
    CharacterRole,
    Document,
    DocumentContent,
    OutlineNode,
    OutlineNodeStatus,
    OutlineNodeType,
    Project,
)

__all__ = [
    "Character",
    "CharacterRole",
    "Document",
    "DocumentContent",
    "OutlineNode",
    "OutlineNodeStatus",
    "OutlineNodeType",
    "Project",
    "count_words",
    "document_from_text",
    "extract_text",
    "generate_id",
]
