"""LiteLLM provider implementation for multi-provider support."""

from __future__ import annotations

import json
import os
from typing import Any, AsyncIterator

import litellm
from litellm import acompletion

from chatgate.errors import EngineTransportCrash
from chatgate.providers.base import LLMProvider, StreamChunk

# Failures that mean "the backend is gone", not "the request was bad".
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.Timeout,
)


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Supports OpenRouter, Anthropic, OpenAI, Gemini and self-hosted
    OpenAI-compatible endpoints through a unified interface.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-sonnet-4-20250514",
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model

        self.is_openrouter = bool(
            (api_key and api_key.startswith("sk-or-")) or
            (api_base and "openrouter" in api_base)
        )
        self.is_vllm = bool(api_base) and not self.is_openrouter

        if api_key:
            if self.is_openrouter:
                os.environ["OPENROUTER_API_KEY"] = api_key
            elif self.is_vllm:
                os.environ["OPENAI_API_KEY"] = api_key
            elif "anthropic" in default_model or "claude" in default_model:
                os.environ.setdefault("ANTHROPIC_API_KEY", api_key)
            elif "openai" in default_model or "gpt" in default_model:
                os.environ.setdefault("OPENAI_API_KEY", api_key)
            elif "gemini" in default_model.lower():
                os.environ.setdefault("GEMINI_API_KEY", api_key)

        litellm.suppress_debug_info = True

    def _resolve_model(self, model: str | None) -> str:
        """Resolve model name with provider-specific prefixes."""
        model = model or self.default_model

        if self.is_openrouter and not model.startswith("openrouter/"):
            model = f"openrouter/{model}"

        if "gemini" in model.lower() and not model.startswith(("gemini/", "openrouter/")):
            model = f"gemini/{model}"

        if self.is_vllm:
            model = f"hosted_vllm/{model}"

        return model

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str | None,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._resolve_model(model),
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        if self.api_base:
            kwargs["api_base"] = self.api_base

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        return kwargs

    async def chat_stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamChunk]:
        """
        Send a streaming chat completion request via LiteLLM.

        Tool call fragments are accumulated and emitted once, complete, on the
        finishing chunk. Connection-level failures raise EngineTransportCrash.
        """
        kwargs = self._build_kwargs(messages, tools, model, max_tokens, temperature)

        try:
            response = await acompletion(**kwargs)

            # Accumulate tool call fragments across chunks
            tc_buffers: dict[int, dict[str, Any]] = {}  # index -> {id, name, args_str}
            usage_data: dict[str, int] | None = None

            async for chunk in response:
                delta = chunk.choices[0].delta if chunk.choices else None
                finish = chunk.choices[0].finish_reason if chunk.choices else None

                if getattr(chunk, "usage", None):
                    usage_data = _usage_dict(chunk.usage)

                if delta is None:
                    if finish:
                        yield StreamChunk(finish_reason=finish, usage=usage_data)
                    continue

                text_delta = getattr(delta, "content", None)
                if text_delta:
                    yield StreamChunk(delta=text_delta)

                thinking = getattr(delta, "reasoning_content", None) or getattr(delta, "thinking", None)
                if thinking:
                    yield StreamChunk(thinking_delta=thinking)

                for tc_delta in getattr(delta, "tool_calls", None) or []:
                    idx = getattr(tc_delta, "index", 0) or 0
                    buf = tc_buffers.setdefault(idx, {"id": "", "name": "", "args_str": ""})
                    if getattr(tc_delta, "id", None):
                        buf["id"] = tc_delta.id
                    fn = getattr(tc_delta, "function", None)
                    if fn is not None:
                        if getattr(fn, "name", None):
                            buf["name"] = fn.name
                        if getattr(fn, "arguments", None):
                            buf["args_str"] += fn.arguments

                if finish:
                    if tc_buffers:
                        calls = []
                        for _idx, buf in sorted(tc_buffers.items()):
                            try:
                                args = json.loads(buf["args_str"]) if buf["args_str"] else {}
                            except json.JSONDecodeError:
                                args = {"raw": buf["args_str"]}
                            calls.append({
                                "id": buf["id"],
                                "type": "function",
                                "function": {"name": buf["name"], "arguments": args},
                            })
                        tc_buffers = {}
                        yield StreamChunk(tool_calls_delta=calls)

                    yield StreamChunk(finish_reason=finish, usage=usage_data)

        except TRANSPORT_ERRORS as e:
            raise EngineTransportCrash(str(e)) from e

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model


def _usage_dict(usage: Any) -> dict[str, int]:
    details = getattr(usage, "prompt_tokens_details", None)
    return {
        "input_tokens": int(getattr(usage, "prompt_tokens", 0) or 0),
        "output_tokens": int(getattr(usage, "completion_tokens", 0) or 0),
        "cache_read_input_tokens": int(
            getattr(usage, "cache_read_input_tokens", 0)
            or getattr(details, "cached_tokens", 0)
            or 0
        ),
        "cache_creation_input_tokens": int(getattr(usage, "cache_creation_input_tokens", 0) or 0),
    }
