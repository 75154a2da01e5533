"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Iterable, Sequence

from bluepencil.ai.provider import CompletionResponse, StreamCallbacks, TokenUsage, _invoke


class FakeClock:
    """Manually advanced clock returning timezone-aware datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeProvider:
    """In-process :class:`CompletionProvider` returning a canned reply or raising."""

    def __init__(self, reply: str = "ok", *, error: BaseException | None = None, chunks: Sequence[str] | None = None) -> None:
        self.reply = reply
        self.error = error
        self.chunks = list(chunks) if chunks is not None else [reply]
        self.calls: list[list[dict[str, str]]] = []

    async def send(self, messages) -> CompletionResponse:
        self.calls.append([dict(message) for message in messages])
        if self.error is not None:
            raise self.error
        return CompletionResponse(content=self.reply, token_usage=TokenUsage(prompt=10, completion=5))

    async def stream(self, messages, callbacks: StreamCallbacks) -> CompletionResponse:
        self.calls.append([dict(message) for message in messages])
        await _invoke(callbacks.on_start)
        if self.error is not None:
            await _invoke(callbacks.on_error, self.error)
            raise self.error
        for chunk in self.chunks:
            await _invoke(callbacks.on_token, chunk)
        response = CompletionResponse(content="".join(self.chunks))
        await _invoke(callbacks.on_complete, response)
        return response


# ----------------------------------------------------------------------
# OpenAI client fakes
# ----------------------------------------------------------------------
@dataclass
class FakeStreamEvent:
    """Simple structure emulating ChatCompletionStreamEvent attributes."""

    type: str
    delta: str | None = None
    content: str | None = None
    refusal: str | None = None
    chunk: Any | None = None


class _FakeStream:
    def __init__(self, events: Iterable[Any], error: BaseException | None = None, delay: float = 0.0):
        self._iterator = iter(list(events))
        self._error = error
        self._delay = delay

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        if self._delay:
            await asyncio.sleep(self._delay)
        try:
            return next(self._iterator)
        except StopIteration:
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration from None


class _FakeStreamContext:
    def __init__(self, events: Iterable[Any], error: BaseException | None = None, delay: float = 0.0):
        self._events = list(events)
        self._error = error
        self._delay = delay

    async def __aenter__(self) -> _FakeStream:
        return _FakeStream(self._events, self._error, self._delay)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class FakeCompletions:
    """Stands in for ``AsyncOpenAI().chat.completions``.

    ``failures`` are raised by successive ``create`` calls before ``reply`` is returned.
    """

    def __init__(
        self,
        *,
        reply: str = "Hello",
        events: Iterable[Any] = (),
        failures: Sequence[BaseException] = (),
        stream_error: BaseException | None = None,
        event_delay: float = 0.0,
    ) -> None:
        self.reply = reply
        self.event_delay = event_delay
        self.events = list(events)
        self.failures = list(failures)
        self.stream_error = stream_error
        self.create_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.create_calls.append(kwargs)
        if self.failures:
            raise self.failures.pop(0)
        message = SimpleNamespace(content=self.reply)
        usage = SimpleNamespace(prompt_tokens=12, completion_tokens=3, total_tokens=15)
        return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")], usage=usage)

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.stream_calls.append(kwargs)
        return _FakeStreamContext(self.events, self.stream_error, self.event_delay)


def make_openai_client(completions: FakeCompletions) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def usage_chunk(prompt: int, completion: int) -> FakeStreamEvent:
    usage = SimpleNamespace(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
    return FakeStreamEvent(type="chunk", chunk=SimpleNamespace(usage=usage))
