"""Completion client interface and error taxonomy."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


class CompletionError(RuntimeError):
    """Base class for completion failures."""

    kind = "error"


class RateLimited(CompletionError):
    """The provider asked us to slow down."""

    kind = "rate_limited"

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientCompletionError(CompletionError):
    """Network blip, 5xx, overload or an empty reply. Safe to retry."""

    kind = "transient"


class FatalCompletionError(CompletionError):
    """Auth failure, bad request, unknown model. Never retried."""

    kind = "fatal"


class CompletionTimeout(CompletionError):
    """The call did not finish within its deadline."""

    kind = "timeout"


@dataclass(frozen=True)
class CompletionRequest:
    """System prompt plus the ordered conversation turns."""

    system_prompt: str
    turns: tuple[tuple[str, str], ...]  # (role, text)

    def to_messages(self) -> list[dict[str, Any]]:
        """Render as OpenAI-style chat messages."""
        messages: list[dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend({"role": role, "content": text} for role, text in self.turns)
        return messages


class CompletionClient(ABC):
    """
    Request/response access to an LLM.

    Implementations raise the CompletionError subclasses above and do not
    retry on their own; the dispatcher owns the retry policy.
    """

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> str:
        """Return the generated reply text."""

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the model used when none is given."""

    async def close(self) -> None:
        """Release any held connections."""
        return None
