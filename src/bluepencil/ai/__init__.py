"""AI client, completion provider, prompts, and response parsing."""

from .client import AIClient, ApproxByteCounter, ClientSettings, TokenCounterRegistry

__all__ = ["AIClient", "ClientSettings", "TokenCounterRegistry", "ApproxByteCounter"]
