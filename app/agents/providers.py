"""Chat-completion clients for the OpenRouter (OpenAI-compatible) API."""

from __future__ import annotations

from typing import Any, Protocol

from openai import OpenAI

from ..core.settings import MessagingSettings


class CompletionUnavailableError(RuntimeError):
    """Raised when no completion provider is configured."""


class CompletionClient(Protocol):
    def complete(
        self, model: str, messages: list[dict[str, str]], **params: Any
    ) -> str: ...


class OpenRouterCompletionClient:
    """Call ``chat.completions`` and return the first choice's content."""

    def __init__(self, client: OpenAI) -> None:
        self._client = client

    def complete(self, model: str, messages: list[dict[str, str]], **params: Any) -> str:
        completion = self._client.chat.completions.create(
            model=model, messages=messages, **params
        )
        content = completion.choices[0].message.content
        if not content:
            raise ValueError("Empty completion content")
        return content


class UnconfiguredCompletionClient:
    """Stand-in used when ``OPENROUTER_API_KEY`` is absent; every call fails."""

    def complete(self, model: str, messages: list[dict[str, str]], **params: Any) -> str:
        raise CompletionUnavailableError("OPENROUTER_API_KEY is not configured")


def build_completion_client(settings: MessagingSettings) -> CompletionClient:
    if not settings.openrouter_api_key:
        return UnconfiguredCompletionClient()
    client = OpenAI(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        timeout=settings.ai_timeout_seconds,
        max_retries=0,
    )
    return OpenRouterCompletionClient(client)


__all__ = [
    "CompletionClient",
    "CompletionUnavailableError",
    "OpenRouterCompletionClient",
    "UnconfiguredCompletionClient",
    "build_completion_client",
]
