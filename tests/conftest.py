"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from bluepencil.ai.client import ApproxByteCounter, TokenCounterRegistry
from bluepencil.events import EventBus
from bluepencil.store.entity_store import EntityStore
from bluepencil.store.persistence import InMemoryRecordStore
from tests.helpers import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def store(bus: EventBus, records: InMemoryRecordStore) -> EntityStore:
    return EntityStore(bus=bus, records=records)


@pytest.fixture
def token_registry() -> TokenCounterRegistry:
    registry = TokenCounterRegistry()
    registry.register("test-model", ApproxByteCounter(model_name="test-model"))
    return registry


@pytest.fixture
def story(store: EntityStore) -> dict:
    """A small project with one chapter document, three characters, and a linked outline."""

    project = store.create_project("The Lighthouse", "A keeper's last winter on the rock.")
    chapter = store.create_document(
        project.id,
        "Chapter One",
        "# Arrival\nMara climbed the stairs. Old Tom watched her from the lamp room.\n"
        "***\n"
        "# Storm\nThe storm broke at midnight. Mara lit the lamp.",
    )
    notes = store.create_document(project.id, "Notes", "")
    mara = store.create_character(project.id, "Mara", "protagonist")
    tom = store.create_character(project.id, "Tom", "minor", aliases=["Old Tom"])
    gull = store.create_character(project.id, "Gull", "mentioned")
    act = store.create_outline_node(project.id, "Act One", "act")
    scene = store.create_outline_node(project.id, "Arrival", "scene", parent_id=act.id)
    store.link_outline_to_document(scene.id, chapter.id)
    return {
        "project": project,
        "chapter": chapter,
        "notes": notes,
        "mara": mara,
        "tom": tom,
        "gull": gull,
        "act": act,
        "scene": scene,
    }
