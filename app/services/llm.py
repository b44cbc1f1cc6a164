# =============================================================================
# Multi-Provider LLM Abstraction — Model Invocation Client
# =============================================================================
#
# Two layers:
#
#   LLMProvider (Protocol)          — chat-style completions per vendor SDK
#   ├── AnthropicProvider           — Claude via native Anthropic SDK
#   └── OpenAICompatibleProvider    — DeepSeek, Qwen, OpenAI, ...
#
#   ModelClient                     — what agents call
#   ├── invoke(prompt) -> str       — single prompt in, raw text out
#   └── stream(prompt, on_chunk)    — incremental delivery, returns full text
#
# Agents build one flat prompt string (role instruction + previous results +
# current input) and hand it to ModelClient. The client sends it as a single
# user message and normalises every SDK failure into ModelInvocationError,
# so the retry loop in the agent contract never has to know which vendor
# raised what.
#
# DESIGN DECISION: Native SDKs over LangChain wrappers, async only.
# The pipeline runs as asyncio tasks inside the API process.
# =============================================================================

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from app.config import Settings, settings

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None] | None]


class ModelInvocationError(RuntimeError):
    """Generic failure talking to the inference service."""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both Anthropic and OpenAI-compatible implementations provide a one-shot
    `complete()` and an incremental `stream()`.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
            system: Optional system prompt.
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).

        Returns:
            LLMResponse with generated text and usage metrics.
        """
        ...

    async def stream(
        self,
        messages: list[dict[str, str]],
        on_chunk: ChunkCallback,
        system: str | None = None,
    ) -> str:
        """Stream a completion, calling on_chunk per text delta. Returns full text."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(self, config: Settings | None = None) -> None:
        from anthropic import AsyncAnthropic

        config = config or settings
        resolved_key = config.llm_api_key or config.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = config.llm_model
        self._temperature = config.llm_temperature
        self._max_tokens = config.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    def _request_kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": (
                temperature if temperature is not None else self._temperature
            ),
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        response = await self._client.messages.create(
            **self._request_kwargs(messages, system, temperature, max_tokens)
        )

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        on_chunk: ChunkCallback,
        system: str | None = None,
    ) -> str:
        """Stream a completion using Claude's messages.stream helper."""
        parts: list[str] = []
        async with self._client.messages.stream(
            **self._request_kwargs(messages, system, None, None)
        ) as stream:
            async for text in stream.text_stream:
                parts.append(text)
                await _deliver(on_chunk, text)
        return "".join(parts)


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (DeepSeek, Qwen, OpenAI, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(self, config: Settings | None = None) -> None:
        from openai import AsyncOpenAI

        config = config or settings
        resolved_key = config.llm_api_key or config.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if config.llm_base_url:
            client_kwargs["base_url"] = config.llm_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = config.llm_model
        self._temperature = config.llm_temperature
        self._max_tokens = config.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            config.llm_base_url or "https://api.openai.com/v1",
        )

    @staticmethod
    def _with_system(
        messages: list[dict[str, str]], system: str | None,
    ) -> list[dict[str, str]]:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)
        return all_messages

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=self._with_system(messages, system),
            max_tokens=max_tokens or self._max_tokens,
            temperature=(
                temperature if temperature is not None else self._temperature
            ),
        )

        content = response.choices[0].message.content or ""
        usage = response.usage

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        on_chunk: ChunkCallback,
        system: str | None = None,
    ) -> str:
        """Stream a completion with stream=True, forwarding content deltas."""
        parts: list[str] = []
        stream = await self._client.chat.completions.create(
            model=self._model,
            messages=self._with_system(messages, system),
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            stream=True,
        )
        async for event in stream:
            if not event.choices:
                continue
            delta = event.choices[0].delta.content
            if delta:
                parts.append(delta)
                await _deliver(on_chunk, delta)
        return "".join(parts)


# ---------------------------------------------------------------------------
# Model Invocation Client — the agent-facing surface
# ---------------------------------------------------------------------------


class ModelClient:
    """
    Prompt-in, text-out wrapper over an LLMProvider.

    Every provider exception is re-raised as ModelInvocationError with the
    original chained, so callers can retry on one exception type.
    """

    def __init__(self, provider: LLMProvider) -> None:
        self._provider = provider

    async def invoke(self, prompt: str) -> str:
        """Send a prompt and return the raw completion text."""
        try:
            response = await self._provider.complete(
                [{"role": "user", "content": prompt}],
            )
        except ModelInvocationError:
            raise
        except Exception as exc:
            raise ModelInvocationError(f"Model invocation failed: {exc}") from exc

        logger.debug(
            "Model invocation ok (model=%s, in=%d, out=%d)",
            response.model, response.input_tokens, response.output_tokens,
        )
        return response.content

    async def stream(self, prompt: str, on_chunk: ChunkCallback) -> str:
        """Stream a completion to on_chunk; returns the concatenated text."""
        try:
            return await self._provider.stream(
                [{"role": "user", "content": prompt}], on_chunk,
            )
        except ModelInvocationError:
            raise
        except Exception as exc:
            raise ModelInvocationError(f"Model streaming failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_llm_provider(
    config: Settings | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build the configured LLM provider.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider (DeepSeek, Qwen, etc.)

    Not a singleton: the application container builds one at startup and
    injects it wherever it is needed.
    """
    config = config or settings
    if config.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(config)
    return AnthropicProvider(config)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _deliver(on_chunk: ChunkCallback, text: str) -> None:
    """Call a sync or async chunk callback."""
    result = on_chunk(text)
    if inspect.isawaitable(result):
        await result
