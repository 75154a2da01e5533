"""Tests for request assembly, response parsing, and assistant sessions."""

from __future__ import annotations

import pytest

from bluepencil.ai.assembler import AIRequest, AssistantSession, RequestAssembler, build_messages, parse_response
from bluepencil.ai.conversation import ConversationMemory, ConversationMessage
from bluepencil.ai.errors import ConfigurationError, ProviderError
from bluepencil.ai.parsing import Citation
from bluepencil.ai.prompts import SYSTEM_PROMPTS, quick_action
from bluepencil.ai.provider import StreamCallbacks
from bluepencil.context.builder import ContextBuilder
from bluepencil.context.tracker import StalenessTracker
from bluepencil.store.entity_store import EntityStore
from tests.helpers import FakeProvider


def _session(store: EntityStore, clock, provider: FakeProvider, project_id: str, document_id: str | None = None):
    tracker = StalenessTracker(ContextBuilder(store, clock=clock), clock=clock)
    tracker.set_focus(project_id, document_id)
    return AssistantSession(RequestAssembler(store, provider), tracker=tracker), tracker


# ----------------------------------------------------------------------
# Message building
# ----------------------------------------------------------------------
@pytest.mark.parametrize("mode", ["editor", "coach"])
def test_empty_request_still_has_system_and_user_message(mode: str) -> None:
    messages = build_messages(AIRequest(mode=mode, user_message="Is this opening strong?"))

    assert [message["role"] for message in messages] == ["system", "user"]
    assert messages[0]["content"] == SYSTEM_PROMPTS[mode]
    assert "Is this opening strong?" in messages[1]["content"]
    assert "No project context is available yet." in messages[1]["content"]


def test_history_keeps_only_user_and_assistant_turns() -> None:
    history = [
        ConversationMessage(role="user", content="First"),
        ConversationMessage(role="tool", content="ignored"),
        {"role": "assistant", "content": "Reply"},
        {"role": "system", "content": "also ignored"},
    ]
    messages = build_messages(AIRequest(mode="editor", user_message="Next", conversation_history=history))

    assert [(message["role"], message["content"]) for message in messages[1:-1]] == [
        ("user", "First"),
        ("assistant", "Reply"),
    ]


def test_parse_response_collects_citations_and_edit() -> None:
    reply = (
        "Mara [char:c1] feels flat here [doc:d1].\n"
        "```suggested-edit\nOriginal: She was sad.\nSuggested: Her hands shook.\nExplanation: Show, don't tell.\n```"
    )
    response = parse_response(reply, document_titles={"d1": "Chapter One"})

    assert response.citations == [Citation("character", "c1", "Character c1"), Citation("document", "d1", "Chapter One")]
    assert response.suggested_edit is not None
    assert response.suggested_edit.suggested == "Her hands shook."


def test_prepare_uses_active_entities(store: EntityStore, clock, story: dict) -> None:
    builder = ContextBuilder(store, clock=clock)
    tracker = StalenessTracker(builder, clock=clock)
    tracker.set_focus(story["project"].id, story["chapter"].id)
    snapshot = builder.build(tracker.focus)
    assembler = RequestAssembler(store, FakeProvider())

    messages = assembler.prepare(AIRequest(mode="coach", user_message="Pacing?", context=snapshot))
    user_turn = messages[-1]["content"]

    assert f"### Mara [char:{story['mara'].id}]" in user_turn
    assert "Gull" not in user_turn
    assert f"[outline:{story['scene'].id}]" in user_turn


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_send_records_both_turns_and_resolves_names(store: EntityStore, clock, story: dict) -> None:
    provider = FakeProvider(f"Mara [char:{story['mara'].id}] needs a goal.")
    session, tracker = _session(store, clock, provider, story["project"].id, story["chapter"].id)

    response = await session.send("What is missing?", selected_text="Mara climbed the stairs.")

    assert response.citations == [Citation("character", story["mara"].id, "Mara")]
    assert response.token_usage is not None and response.token_usage.total == 15
    assert [message.role for message in session.history()] == ["user", "assistant"]
    assert tracker.snapshot is not None and tracker.snapshot.version == 1
    sent = provider.calls[0]
    assert sent[0]["content"] == SYSTEM_PROMPTS["editor"]
    assert "# Selected Text for Review" in sent[-1]["content"]


@pytest.mark.asyncio
async def test_history_is_replayed_on_the_next_turn(store: EntityStore, clock, story: dict) -> None:
    provider = FakeProvider("Noted.")
    session, _ = _session(store, clock, provider, story["project"].id)

    await session.send("First question")
    await session.send("Second question")

    second = provider.calls[1]
    assert [message["role"] for message in second] == ["system", "user", "assistant", "user"]
    assert second[1]["content"] == "First question"
    assert second[2]["content"] == "Noted."


@pytest.mark.asyncio
async def test_provider_failure_keeps_user_turn_and_adds_inline_error(store: EntityStore, clock, story: dict) -> None:
    provider = FakeProvider(error=ProviderError("network down"))
    session, _ = _session(store, clock, provider, story["project"].id)

    with pytest.raises(ProviderError):
        await session.send("Hello?")

    history = session.history()
    assert [(message.role, message.content) for message in history] == [
        ("user", "Hello?"),
        ("assistant", "Error: network down"),
    ]
    assert history[1].is_error

    provider.error = None
    await session.send("Again")
    replay = provider.calls[-1]
    assert [message["content"] for message in replay[1:-1]] == ["Hello?"]


@pytest.mark.asyncio
async def test_configuration_error_surfaces_unchanged(store: EntityStore, clock, story: dict) -> None:
    provider = FakeProvider(error=ConfigurationError("no key"))
    session, _ = _session(store, clock, provider, story["project"].id)

    with pytest.raises(ConfigurationError):
        await session.send("Hi")
    assert session.history()[-1].content == "Error: no key"


@pytest.mark.asyncio
async def test_stream_forwards_tokens_and_parsed_response(store: EntityStore, clock, story: dict) -> None:
    provider = FakeProvider(chunks=["Look at ", f"[doc:{story['chapter'].id}]", "."])
    session, _ = _session(store, clock, provider, story["project"].id, story["chapter"].id)
    tokens: list[str] = []
    completed: list = []

    async def _on_complete(response) -> None:
        completed.append(response)

    response = await session.stream(
        "Where?",
        StreamCallbacks(on_token=tokens.append, on_complete=_on_complete),
    )

    assert "".join(tokens) == response.content
    assert completed == [response]
    assert response.citations[0].name == "Chapter One"
    assert session.history()[-1].content == response.content


@pytest.mark.asyncio
async def test_quick_action_and_mode_switch(store: EntityStore, clock, story: dict) -> None:
    provider = FakeProvider("Fine.")
    session, _ = _session(store, clock, provider, story["project"].id)
    session.mode = "coach"

    await session.run_quick_action("dialogue_review", "\"Hi,\" she said.")

    sent = provider.calls[0]
    assert sent[0]["content"] == SYSTEM_PROMPTS["coach"]
    assert sent[-1]["content"].endswith(quick_action("dialogue_review").prompt)
    with pytest.raises(ValueError):
        session.mode = "critic"  # type: ignore[assignment]

    session.clear()
    assert session.history() == []


def test_session_without_tracker_sends_no_context() -> None:
    assembler = RequestAssembler(EntityStore(), FakeProvider())
    session = AssistantSession(assembler)
    assert session.mode == "editor"
    with pytest.raises(ValueError):
        AssistantSession(assembler, mode="critic")  # type: ignore[arg-type]


def test_conversation_memory_caps_and_serializes() -> None:
    memory = ConversationMemory(max_messages=2)
    memory.add("user", "one")
    memory.add("assistant", "two")
    memory.add("user", "three", metadata={"mode": "editor"})

    assert [message.content for message in memory.get_messages()] == ["two", "three"]
    restored = ConversationMessage.from_dict(memory.get_messages()[-1].to_dict())
    assert restored == memory.get_messages()[-1]
