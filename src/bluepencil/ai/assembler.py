"""Turn author requests into provider messages and replies into typed results.

Nothing here talks to the network directly: requests go through an injected
:class:`~bluepencil.ai.provider.CompletionProvider`.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from ..context.tracker import StalenessTracker
from ..context.types import ContextSnapshot
from ..core.models import Character, OutlineNode
from ..store.entity_store import EntityStore
from .conversation import ConversationMemory, ConversationMessage
from .parsing import Citation, SuggestedEdit, resolve_citations, scan_citations, scan_suggested_edit
from .prompts import AssistantMode, quick_action, render_user_turn, system_prompt_for
from .provider import CompletionProvider, CompletionResponse, StreamCallbacks, TokenUsage

LOGGER = logging.getLogger(__name__)

_HISTORY_ROLES = frozenset({"user", "assistant"})


@dataclass(slots=True)
class AIRequest:
    mode: AssistantMode
    user_message: str
    context: ContextSnapshot | None = None
    selected_text: str | None = None
    conversation_history: Sequence[ConversationMessage | Mapping[str, Any]] = ()


@dataclass(slots=True)
class AIResponse:
    content: str
    citations: list[Citation] = field(default_factory=list)
    suggested_edit: SuggestedEdit | None = None
    token_usage: TokenUsage | None = None


def _role_and_content(message: ConversationMessage | Mapping[str, Any]) -> tuple[str, str]:
    if isinstance(message, ConversationMessage):
        return message.role, message.content
    return str(message.get("role", "")), str(message.get("content", ""))


def build_messages(
    request: AIRequest,
    characters: Sequence[Character] = (),
    outline_nodes: Sequence[OutlineNode] = (),
) -> list[dict[str, str]]:
    """Return ``[system, *history, user]`` for ``request``.

    History turns with roles other than ``user``/``assistant`` are dropped.
    """

    messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt_for(request.mode)}]
    for message in request.conversation_history:
        role, content = _role_and_content(message)
        if role in _HISTORY_ROLES:
            messages.append({"role": role, "content": content})
    messages.append(
        {
            "role": "user",
            "content": render_user_turn(
                request.user_message,
                request.context,
                characters=characters,
                outline_nodes=outline_nodes,
                selected_text=request.selected_text,
            ),
        }
    )
    return messages


def parse_response(
    content: str,
    *,
    document_titles: Mapping[str, str] | None = None,
    characters: Iterable[Character] = (),
    outline_nodes: Iterable[OutlineNode] = (),
    token_usage: TokenUsage | None = None,
) -> AIResponse:
    citations = resolve_citations(
        scan_citations(content),
        document_titles=document_titles,
        characters=characters,
        outline_nodes=outline_nodes,
    )
    return AIResponse(
        content=content,
        citations=citations,
        suggested_edit=scan_suggested_edit(content),
        token_usage=token_usage,
    )


@dataclass(slots=True)
class _ProjectView:
    characters: list[Character]
    outline_nodes: list[OutlineNode]
    all_characters: list[Character]
    all_outline_nodes: list[OutlineNode]
    document_titles: dict[str, str]


class RequestAssembler:
    """Binds the entity store and a provider to build, send and parse requests."""

    def __init__(self, store: EntityStore, provider: CompletionProvider) -> None:
        self._store = store
        self._provider = provider

    @property
    def provider(self) -> CompletionProvider:
        return self._provider

    def prepare(self, request: AIRequest) -> list[dict[str, str]]:
        view = self._view(request.context)
        return build_messages(request, view.characters, view.outline_nodes)

    async def send(self, request: AIRequest) -> AIResponse:
        view = self._view(request.context)
        messages = build_messages(request, view.characters, view.outline_nodes)
        completion = await self._provider.send(messages)
        return self._parse(completion, view)

    async def stream(self, request: AIRequest, callbacks: StreamCallbacks | None = None) -> AIResponse:
        """Stream a request; ``callbacks.on_complete`` receives the parsed :class:`AIResponse`."""

        callbacks = callbacks or StreamCallbacks()
        view = self._view(request.context)
        messages = build_messages(request, view.characters, view.outline_nodes)
        provider_callbacks = StreamCallbacks(
            on_start=callbacks.on_start,
            on_token=callbacks.on_token,
            on_error=callbacks.on_error,
        )
        completion = await self._provider.stream(messages, provider_callbacks)
        response = self._parse(completion, view)
        if callbacks.on_complete is not None:
            result = callbacks.on_complete(response)
            if inspect.isawaitable(result):
                await result
        return response

    def _parse(self, completion: CompletionResponse, view: _ProjectView) -> AIResponse:
        return parse_response(
            completion.content,
            document_titles=view.document_titles,
            characters=view.all_characters,
            outline_nodes=view.all_outline_nodes,
            token_usage=completion.token_usage,
        )

    def _view(self, context: ContextSnapshot | None) -> _ProjectView:
        if context is None:
            return _ProjectView([], [], [], [], {})
        all_characters = self._store.characters_for(context.project_id)
        all_nodes = self._store.outline_for(context.project_id)
        by_char = {char.id: char for char in all_characters}
        by_node = {node.id: node for node in all_nodes}
        return _ProjectView(
            characters=[by_char[cid] for cid in context.active_character_ids if cid in by_char],
            outline_nodes=[by_node[nid] for nid in context.active_outline_ids if nid in by_node],
            all_characters=all_characters,
            all_outline_nodes=all_nodes,
            document_titles={doc.id: doc.title for doc in self._store.documents_for(context.project_id)},
        )


class AssistantSession:
    """One author-facing conversation.

    The user's turn is recorded before the provider is called. When the call
    fails an inline ``Error: ...`` assistant turn is appended and the error
    is re-raised, so history stays consistent either way.
    """

    def __init__(
        self,
        assembler: RequestAssembler,
        *,
        tracker: StalenessTracker | None = None,
        memory: ConversationMemory | None = None,
        mode: AssistantMode = "editor",
    ) -> None:
        system_prompt_for(mode)
        self._assembler = assembler
        self._tracker = tracker
        self._memory = memory or ConversationMemory()
        self._mode: AssistantMode = mode

    @property
    def mode(self) -> AssistantMode:
        return self._mode

    @mode.setter
    def mode(self, value: AssistantMode) -> None:
        system_prompt_for(value)
        self._mode = value

    @property
    def memory(self) -> ConversationMemory:
        return self._memory

    def history(self) -> list[ConversationMessage]:
        return self._memory.get_messages()

    async def send(self, message: str, *, selected_text: str | None = None) -> AIResponse:
        request = await self._begin(message, selected_text)
        try:
            response = await self._assembler.send(request)
        except Exception as exc:
            self._record_error(exc)
            raise
        self._record_reply(response)
        return response

    async def stream(
        self,
        message: str,
        callbacks: StreamCallbacks | None = None,
        *,
        selected_text: str | None = None,
    ) -> AIResponse:
        request = await self._begin(message, selected_text)
        try:
            response = await self._assembler.stream(request, callbacks)
        except Exception as exc:
            self._record_error(exc)
            raise
        self._record_reply(response)
        return response

    async def run_quick_action(self, action_type: str, selected_text: str | None = None) -> AIResponse:
        return await self.send(quick_action(action_type).prompt, selected_text=selected_text)

    def clear(self) -> None:
        self._memory.clear()

    async def _begin(self, message: str, selected_text: str | None) -> AIRequest:
        history = self._memory.history_for_prompt()
        self._memory.add("user", message, metadata={"mode": self._mode})
        context: ContextSnapshot | None = None
        if self._tracker is not None:
            await self._tracker.drain_and_process()
            context = self._tracker.snapshot
        return AIRequest(
            mode=self._mode,
            user_message=message,
            context=context,
            selected_text=selected_text,
            conversation_history=history,
        )

    def _record_reply(self, response: AIResponse) -> None:
        self._memory.add(
            "assistant",
            response.content,
            metadata={"citations": [f"{citation.type}:{citation.id}" for citation in response.citations]},
        )

    def _record_error(self, exc: BaseException) -> None:
        LOGGER.warning("Assistant request failed: %s", exc)
        self._memory.add("assistant", f"Error: {exc}", metadata={"error": type(exc).__name__})


__all__ = [
    "AIRequest",
    "AIResponse",
    "AssistantSession",
    "RequestAssembler",
    "build_messages",
    "parse_response",
]
