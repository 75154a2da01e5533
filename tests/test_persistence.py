"""Tests for record stores and store hydration."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from bluepencil.context.builder import ContextBuilder, ContextFocus
from bluepencil.core.models import CharacterRole, OutlineNodeStatus
from bluepencil.store.entity_store import EntityStore
from bluepencil.store.persistence import (
    InMemoryRecordStore,
    JsonDirectoryRecordStore,
    decode_record,
    hydrate_store,
    to_payload,
)


@pytest.fixture(params=["memory", "json"])
def record_store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        return InMemoryRecordStore()
    return JsonDirectoryRecordStore(tmp_path / "records")


def test_mutations_write_through_and_hydrate(record_store) -> None:
    source = EntityStore(records=record_store)
    project = source.create_project("Saga")
    doc = source.create_document(project.id, "One", "Mara walked.")
    mara = source.create_character(project.id, "Mara", "protagonist", aliases=["M"])
    act = source.create_outline_node(project.id, "Act", "act")
    scene = source.create_outline_node(project.id, "Scene", "scene", parent_id=act.id)
    source.link_outline_to_document(scene.id, doc.id)
    source.update_outline_node(scene.id, status="draft")

    restored = EntityStore()
    hydrate_store(restored, record_store)

    assert restored.get_project(project.id) == source.get_project(project.id)
    assert restored.get_document(doc.id) == source.get_document(doc.id)
    assert restored.get_character(mara.id).role is CharacterRole.PROTAGONIST
    assert restored.get_outline_node(scene.id).status is OutlineNodeStatus.DRAFT
    assert [node.id for node in restored.outline_children(act.id)] == [scene.id]


def test_deletes_remove_records(record_store) -> None:
    store = EntityStore(records=record_store)
    project = store.create_project("Saga")
    doc = store.create_document(project.id, "One")

    store.delete_document(doc.id)

    assert record_store.get("document", doc.id) is None
    assert record_store.list("document") == []
    record_store.delete("document", doc.id)


def test_context_snapshot_roundtrip(record_store, store: EntityStore, clock, story: dict) -> None:
    snapshot = ContextBuilder(store, clock=clock).build(
        ContextFocus(project_id=story["project"].id, document_id=story["chapter"].id), version=4
    )

    record_store.put("context_snapshot", snapshot.project_id, snapshot)

    assert record_store.get("context_snapshot", snapshot.project_id) == snapshot


def test_unknown_kind_is_rejected(record_store) -> None:
    with pytest.raises(ValueError):
        record_store.put("scene", "x", {})
    with pytest.raises(ValueError):
        record_store.list("scene")
    with pytest.raises(ValueError):
        decode_record("scene", {})


def test_json_store_sanitizes_ids_and_skips_bad_files(tmp_path: Path) -> None:
    records = JsonDirectoryRecordStore(tmp_path)
    store = EntityStore(records=records)
    project = store.create_project("Saga")

    records.put("project", "../escape attempt", store.get_project(project.id))
    (tmp_path / "project" / "broken.json").write_text("{oops", encoding="utf-8")

    files = sorted(path.name for path in (tmp_path / "project").glob("*.json"))
    assert "..escape_attempt.json" in files
    assert not (tmp_path / "escape attempt.json").exists()
    assert len(records.list("project")) == 2


def test_to_payload_is_json_compatible(store: EntityStore, story: dict) -> None:
    payload = to_payload(store.get_document(story["chapter"].id))

    assert payload["content"]["type"] == "doc"
    assert isinstance(payload["created_at"], str)
    json.dumps(payload)
