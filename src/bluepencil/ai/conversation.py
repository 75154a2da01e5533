"""Conversation history kept by an assistant session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Mapping, cast

ChatRole = Literal["system", "user", "assistant", "tool"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ConversationMessage:
    """Individual chat turn stored inside :class:`ConversationMemory`."""

    role: ChatRole
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_error(self) -> bool:
        return bool(self.metadata.get("error"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ConversationMessage:
        created_at = payload.get("created_at")
        timestamp = datetime.fromisoformat(created_at) if isinstance(created_at, str) else _utcnow()
        return cls(
            role=cast(ChatRole, payload.get("role", "user")),
            content=str(payload.get("content", "")),
            metadata=dict(payload.get("metadata", {})),
            created_at=timestamp,
        )


class ConversationMemory:
    """Rolling buffer of chat turns capped at ``max_messages``."""

    def __init__(
        self,
        *,
        max_messages: int = 50,
        initial_messages: Iterable[ConversationMessage | Mapping[str, Any]] | None = None,
    ) -> None:
        self._max_messages = max(1, max_messages)
        self._messages: list[ConversationMessage] = []
        if initial_messages:
            self.extend(initial_messages)

    def __len__(self) -> int:
        return len(self._messages)

    def add(self, role: ChatRole, content: str, *, metadata: Mapping[str, Any] | None = None) -> ConversationMessage:
        message = ConversationMessage(role=role, content=content, metadata=dict(metadata or {}))
        self._messages.append(message)
        self._trim()
        return message

    def extend(self, messages: Iterable[ConversationMessage | Mapping[str, Any]]) -> None:
        for message in messages:
            if isinstance(message, ConversationMessage):
                self._messages.append(message)
            else:
                self._messages.append(ConversationMessage.from_dict(message))
        self._trim()

    def clear(self) -> None:
        self._messages.clear()

    def get_messages(self) -> list[ConversationMessage]:
        return list(self._messages)

    def history_for_prompt(self) -> list[ConversationMessage]:
        """Turns suitable for replay to the model; inline error replies are left out."""

        return [message for message in self._messages if not message.is_error]

    def _trim(self) -> None:
        overflow = len(self._messages) - self._max_messages
        if overflow > 0:
            del self._messages[:overflow]


__all__ = ["ChatRole", "ConversationMemory", "ConversationMessage"]
