"""LiteLLM completion client for multi-provider support."""

import asyncio
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from relaybot.providers.base import (
    CompletionClient,
    CompletionRequest,
    CompletionTimeout,
    FatalCompletionError,
    RateLimited,
    TransientCompletionError,
)


def _retry_after_seconds(exc: Exception) -> float | None:
    """Read a Retry-After header off a provider exception, if there is one."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def classify_exception(exc: Exception) -> Exception:
    """
    Map a litellm exception onto the completion error taxonomy.

    Timeout is checked first because litellm's Timeout derives from the
    connection error class.
    """
    if isinstance(exc, litellm.Timeout):
        return CompletionTimeout(str(exc))
    if isinstance(exc, litellm.RateLimitError):
        return RateLimited(str(exc), retry_after=_retry_after_seconds(exc))
    if isinstance(
        exc,
        (
            litellm.AuthenticationError,
            litellm.PermissionDeniedError,
            litellm.NotFoundError,
            litellm.BadRequestError,
        ),
    ):
        return FatalCompletionError(str(exc))
    return TransientCompletionError(str(exc))


class LiteLLMClient(CompletionClient):
    """
    Completion client using LiteLLM.

    Supports DeepSeek, OpenRouter, Anthropic, OpenAI, Gemini and any
    OpenAI-compatible endpoint through one interface.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "deepseek/deepseek-chat",
        provider_name: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        timeout: float = 60.0,
    ):
        self.api_key = api_key or None
        self.api_base = api_base or None
        self.default_model = default_model
        self.provider_name = provider_name.strip().lower() if provider_name else None
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout

        if self.provider_name:
            self.is_openrouter = self.provider_name == "openrouter"
        else:
            self.is_openrouter = bool(
                (api_key and api_key.startswith("sk-or-"))
                or (api_base and "openrouter" in api_base)
            )
        self.is_custom = bool(self.api_base) and not self.is_openrouter

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True

    def resolve_model(self, model: str | None = None) -> str:
        """Apply the provider routing prefix LiteLLM expects."""
        model = model or self.default_model

        if self.is_openrouter and not model.startswith("openrouter/"):
            return f"openrouter/{model}"

        if self.is_custom and "/" not in model:
            return f"openai/{model}"

        if self.provider_name == "deepseek" and not model.startswith("deepseek/"):
            return f"deepseek/{model}"

        if (
            "gemini" in model.lower()
            and not model.startswith("gemini/")
            and not model.startswith("openrouter/")
        ):
            return f"gemini/{model}"

        return model

    async def complete(self, request: CompletionRequest) -> str:
        """
        Send one chat completion request.

        Raises:
            RateLimited, TransientCompletionError, FatalCompletionError,
            CompletionTimeout.
        """
        kwargs: dict[str, Any] = {
            "model": self.resolve_model(),
            "messages": request.to_messages(),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = await asyncio.wait_for(acompletion(**kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CompletionTimeout(f"Completion timed out after {self.timeout:.0f}s") from None
        except Exception as e:
            mapped = classify_exception(e)
            logger.debug(f"LLM call failed ({type(e).__name__} -> {type(mapped).__name__}): {e}")
            raise mapped from e

        return self._parse_response(response)

    def _parse_response(self, response: Any) -> str:
        """Pull the reply text out of a LiteLLM response."""
        try:
            choice = response.choices[0]
        except (IndexError, AttributeError, TypeError):
            raise TransientCompletionError("LLM response has no choices") from None

        content = (getattr(choice.message, "content", None) or "").strip()
        if not content:
            finish_reason = getattr(choice, "finish_reason", None)
            raise TransientCompletionError(f"Empty LLM response (finish_reason={finish_reason})")

        usage = getattr(response, "usage", None)
        if usage:
            logger.debug(
                f"LLM usage: prompt={usage.prompt_tokens} "
                f"completion={usage.completion_tokens} total={usage.total_tokens}"
            )
        return content

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model
