"""Error taxonomy for the assistant pipeline.

Parse misses are not errors: citation and suggested-edit extraction return
empty results instead of raising.
"""

from __future__ import annotations


class BluePencilAIError(RuntimeError):
    """Base class for assistant pipeline failures."""


class ConfigurationError(BluePencilAIError):
    """No usable provider configuration (missing API key, model, or base URL).

    Raised before any network attempt and never retried.
    """


class ProviderError(BluePencilAIError):
    """The completion provider failed (network, HTTP status, timeout, refusal)."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class QueueProcessingError(BluePencilAIError):
    """A context rebuild failed while draining the update queue.

    Attributes:
        event_count: Number of update events in the batch that failed.
    """

    def __init__(self, message: str, *, event_count: int = 0) -> None:
        super().__init__(message)
        self.event_count = event_count


__all__ = [
    "BluePencilAIError",
    "ConfigurationError",
    "ProviderError",
    "QueueProcessingError",
]
