"""LLM provider and agent engine interfaces."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Union

if TYPE_CHECKING:
    from chatgate.agent.tools.registry import ToolRegistry
    from chatgate.broker.permissions import PermissionDecision


@dataclass
class ToolCallRequest:
    """A tool call request from the LLM."""
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class StreamChunk:
    """A single chunk from a streaming LLM response.

    Exactly one of the content fields will be non-None for a given chunk.
    """
    delta: str | None = None          # text content delta
    thinking_delta: str | None = None  # thinking/reasoning delta
    tool_calls_delta: list[dict[str, Any]] | None = None  # completed tool calls
    finish_reason: str | None = None   # set on last chunk
    usage: dict[str, int] | None = None  # set on last chunk


class LLMProvider(ABC):
    """Streaming chat completion backend used by the tool-loop engine."""

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    def chat_stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamChunk]:
        """Yield StreamChunk instances as the model produces them."""

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the default model for this provider."""


# ── Engine events ────────────────────────────────────────────────

@dataclass
class SessionBound:
    session_id: str


@dataclass
class TextChunk:
    text: str


@dataclass
class ThinkingChunk:
    text: str


@dataclass
class ToolInvocation:
    """A tool call waiting for the orchestrator's verdict.

    The engine suspends on ``decision()`` until ``resolve()`` is called once.
    """
    id: str
    name: str
    arguments: dict[str, Any]
    _decision: asyncio.Future[PermissionDecision] | None = field(default=None, repr=False)

    def _future(self) -> asyncio.Future[PermissionDecision]:
        if self._decision is None:
            self._decision = asyncio.get_running_loop().create_future()
        return self._decision

    def resolve(self, decision: PermissionDecision) -> None:
        fut = self._future()
        if not fut.done():
            fut.set_result(decision)

    @property
    def resolved(self) -> bool:
        return self._decision is not None and self._decision.done()

    async def decision(self) -> PermissionDecision:
        return await self._future()


@dataclass
class UsageSummary:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
        }


@dataclass
class TurnDone:
    text: str = ""
    finish_reason: str = "stop"


EngineEvent = Union[SessionBound, TextChunk, ThinkingChunk, ToolInvocation, UsageSummary, TurnDone]


class AgentEngine(ABC):
    """The agent engine as the orchestrator sees it: one streamed turn at a time."""

    @abstractmethod
    def start_turn(
        self,
        prompt: str,
        *,
        session_id: str | None,
        system_prompt: str,
        tools: ToolRegistry | None,
        cancel: asyncio.Event,
    ) -> AsyncIterator[EngineEvent]:
        """Stream one turn.

        Must yield ``SessionBound`` before anything else when ``session_id`` is
        new. Each ``ToolInvocation`` must be resolved by the consumer before the
        engine continues. Raises ``EngineTransportCrash`` on transport failure.
        """

    def forget(self, session_id: str) -> None:
        """Drop any engine-side state for ``session_id``."""
