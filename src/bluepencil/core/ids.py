"""Identifier helpers shared by the entity store."""

from __future__ import annotations

import uuid

__all__ = ["generate_id"]


def generate_id() -> str:
    """Return a fresh identifier safe for use inside citation markers."""

    return uuid.uuid4().hex