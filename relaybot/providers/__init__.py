"""LLM completion clients."""

from relaybot.providers.base import (
    CompletionClient,
    CompletionError,
    CompletionRequest,
    CompletionTimeout,
    FatalCompletionError,
    RateLimited,
    TransientCompletionError,
)
from relaybot.providers.litellm_provider import LiteLLMClient

__all__ = [
    "CompletionClient",
    "CompletionError",
    "CompletionRequest",
    "CompletionTimeout",
    "FatalCompletionError",
    "LiteLLMClient",
    "RateLimited",
    "TransientCompletionError",
]
