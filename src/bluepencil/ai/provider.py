"""Completion provider capability and its OpenAI-compatible implementation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence

import httpx
from openai import APIError, AsyncOpenAI

from .client import AIClient, ClientSettings, TokenCounterRegistry
from .errors import ConfigurationError, ProviderError

LOGGER = logging.getLogger(__name__)

Message = Mapping[str, str]


@dataclass(slots=True, frozen=True)
class TokenUsage:
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion

    @classmethod
    def from_mapping(cls, usage: Mapping[str, int] | None) -> "TokenUsage | None":
        if not usage:
            return None
        return cls(prompt=int(usage.get("prompt_tokens", 0)), completion=int(usage.get("completion_tokens", 0)))


@dataclass(slots=True)
class CompletionResponse:
    content: str
    token_usage: TokenUsage | None = None


Callback = Callable[..., Any]


@dataclass(slots=True)
class StreamCallbacks:
    """Hooks invoked while a streamed completion runs; each may be sync or async."""

    on_start: Callable[[], Any] | None = None
    on_token: Callable[[str], Any] | None = None
    on_complete: Callable[[CompletionResponse], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None


async def _invoke(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class CompletionProvider(Protocol):
    """Executes a language-model request for an ordered message list."""

    async def send(self, messages: Sequence[Message]) -> CompletionResponse: ...

    async def stream(self, messages: Sequence[Message], callbacks: StreamCallbacks) -> CompletionResponse: ...


class OpenAICompletionProvider:
    """:class:`CompletionProvider` backed by :class:`~bluepencil.ai.client.AIClient`.

    ``send`` is bounded by ``timeout`` seconds; ``stream`` applies the same
    limit to the wait for each event. Failures are wrapped in
    :class:`ProviderError` with the original exception chained.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
        timeout: float | None = 120.0,
    ) -> None:
        self._settings = settings
        self._openai = client
        self._token_registry = token_registry
        self._timeout = timeout
        self._client: AIClient | None = None

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def is_configured(self) -> bool:
        return bool((self._settings.api_key or "").strip() and (self._settings.model or "").strip())

    def ensure_configured(self) -> None:
        if not (self._settings.api_key or "").strip():
            raise ConfigurationError("AI provider is not configured. Please provide an API key.")
        if not (self._settings.model or "").strip():
            raise ConfigurationError("AI provider is not configured. Please choose a model.")

    async def send(self, messages: Sequence[Message]) -> CompletionResponse:
        self.ensure_configured()
        client = self._ensure_client()
        try:
            result = await self._bounded(client.complete(messages))
        except ProviderError:
            raise
        except Exception as exc:
            raise self._wrap(exc) from exc
        return CompletionResponse(content=result.content, token_usage=TokenUsage.from_mapping(result.usage))

    async def stream(self, messages: Sequence[Message], callbacks: StreamCallbacks) -> CompletionResponse:
        """Stream a completion, forwarding deltas to ``callbacks``.

        Configuration errors are raised without touching the callbacks.
        Provider failures are reported through ``on_error`` and re-raised.
        """

        self.ensure_configured()
        client = self._ensure_client()
        await _invoke(callbacks.on_start)
        chunks: list[str] = []
        usage: Mapping[str, int] | None = None

        events = client.stream_chat(messages)
        try:
            while True:
                # The timeout bounds the wait for each event, not the whole reply.
                try:
                    event = await self._bounded(anext(events))
                except StopAsyncIteration:
                    break
                if event.type == "content.delta" and event.content:
                    chunks.append(event.content)
                    await _invoke(callbacks.on_token, event.content)
                elif event.type == "refusal.done" and event.content:
                    raise ProviderError(f"Model refused the request: {event.content}")
                elif event.type == "usage" and event.usage:
                    usage = event.usage
        except Exception as exc:
            await events.aclose()
            error = exc if isinstance(exc, ProviderError) else self._wrap(exc)
            if error is not exc:
                error.__cause__ = exc
            LOGGER.warning("Streamed completion failed: %s", error)
            await _invoke(callbacks.on_error, error)
            raise error
        response = CompletionResponse(content="".join(chunks), token_usage=TokenUsage.from_mapping(usage))
        await _invoke(callbacks.on_complete, response)
        return response

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> AIClient:
        if self._client is None:
            self._client = AIClient(self._settings, client=self._openai, token_registry=self._token_registry)
        return self._client

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        if self._timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    def _wrap(self, exc: BaseException) -> ProviderError:
        if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
            return ProviderError(f"AI request timed out after {self._timeout}s", retryable=True)
        if isinstance(exc, APIError):
            return ProviderError(f"AI provider error: {exc}", retryable=False)
        return ProviderError(f"AI request failed: {exc}" if str(exc) else f"AI request failed: {type(exc).__name__}")


__all__ = [
    "CompletionProvider",
    "CompletionResponse",
    "Message",
    "OpenAICompletionProvider",
    "StreamCallbacks",
    "TokenUsage",
]
