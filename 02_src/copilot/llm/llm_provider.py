"""LLM Provider implementation using Anthropic Claude API."""

import json
import os
from typing import Any, Protocol

import anthropic


def extract_json_object(text: str) -> dict | None:
    """Parse the substring between the first '{' and the last '}' as JSON.

    Returns None when there is no such substring or it is not a JSON object.
    """
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class ILLMProvider(Protocol):
    """Abstraction for LLM access."""

    async def complete(
        self,
        messages: list[dict],  # [{"role": "user", "content": "..."}]
        system: str | None = None,
        max_tokens: int = 1024,
        model: str | None = None,
    ) -> str:
        """Generate completion."""
        ...

    def stream(
        self,
        messages: list[dict],
        system: str | None = None,
        tools: list[dict] | None = None,
        max_tokens: int = 1024,
        model: str | None = None,
    ) -> Any:
        """Open a streamed completion (async context manager)."""
        ...


class LLMProvider:
    """Anthropic Claude API provider."""

    def __init__(self, api_key: str | None = None, model: str = "claude-sonnet-4-5"):
        self._api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self._api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable not set")

        self._model = model
        self._client = anthropic.AsyncAnthropic(api_key=self._api_key)

    @property
    def model(self) -> str:
        return self._model

    def _request(
        self,
        messages: list[dict],
        system: str | None,
        max_tokens: int,
        model: str | None,
        tools: list[dict] | None = None,
    ) -> dict:
        request = {
            "model": model or self._model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = tools
        return request

    async def complete(
        self,
        messages: list[dict],  # [{"role": "user", "content": "..."}]
        system: str | None = None,
        max_tokens: int = 1024,
        model: str | None = None,
    ) -> str:
        """Generate completion using Claude API."""
        try:
            response = await self._client.messages.create(
                **self._request(messages, system, max_tokens, model)
            )
        except Exception as e:
            # Re-raise for handling by caller
            raise RuntimeError(f"LLM API error: {e}") from e

        return "".join(
            block.text
            for block in response.content
            if isinstance(getattr(block, "text", None), str)
        ).strip()

    def stream(
        self,
        messages: list[dict],
        system: str | None = None,
        tools: list[dict] | None = None,
        max_tokens: int = 1024,
        model: str | None = None,
    ):
        """Open a streamed completion.

        Returns the SDK's stream manager; use it as ``async with``.
        """
        return self._client.messages.stream(
            **self._request(messages, system, max_tokens, model, tools)
        )
