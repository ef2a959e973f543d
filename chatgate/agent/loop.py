"""Tool-loop agent engine: streams a litellm chat loop as engine events.

Each turn repeats model call -> tool calls -> tool results until the model
answers without tools. Every tool call is yielded as a ``ToolInvocation``; the
loop waits for the consumer's verdict before executing (or refusing) it.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, AsyncIterator

from loguru import logger

from chatgate.agent.tools.registry import ToolRegistry
from chatgate.broker.permissions import Allow
from chatgate.errors import TurnCancelled
from chatgate.providers.base import (
    AgentEngine,
    EngineEvent,
    LLMProvider,
    SessionBound,
    TextChunk,
    ThinkingChunk,
    ToolCallRequest,
    ToolInvocation,
    TurnDone,
    UsageSummary,
)

MAX_HISTORY_MESSAGES = 200


def new_engine_session_id() -> str:
    return f"ses_{uuid.uuid4().hex[:16]}"


class ToolLoopEngine(AgentEngine):
    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: str | None = None,
        max_iterations: int = 40,
        max_tokens: int = 8192,
        temperature: float = 0.2,
    ):
        self.provider = provider
        self.model = model or provider.get_default_model()
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._histories: dict[str, list[dict[str, Any]]] = {}

    def forget(self, session_id: str) -> None:
        self._histories.pop(session_id, None)

    def history(self, session_id: str) -> list[dict[str, Any]]:
        return list(self._histories.get(session_id, []))

    async def start_turn(
        self,
        prompt: str,
        *,
        session_id: str | None,
        system_prompt: str,
        tools: ToolRegistry | None,
        cancel: asyncio.Event,
    ) -> AsyncIterator[EngineEvent]:
        if not session_id:
            session_id = new_engine_session_id()
            yield SessionBound(session_id)
        history = self._histories.setdefault(session_id, [])

        turn: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        committed = 0
        usage = UsageSummary()
        final_text = ""
        finish_reason = "stop"
        definitions = tools.get_definitions() if tools else None

        def _commit() -> None:
            nonlocal committed
            history.extend(turn[committed:])
            committed = len(turn)
            if len(history) > MAX_HISTORY_MESSAGES:
                del history[: len(history) - MAX_HISTORY_MESSAGES]

        for iteration in range(1, self.max_iterations + 1):
            messages: list[dict[str, Any]] = []
            if system_prompt:
                messages.append({"role": "system", "content": system_prompt})
            messages.extend(history)
            messages.extend(turn[committed:])

            content_parts: list[str] = []
            tool_calls: list[ToolCallRequest] = []

            async for chunk in self.provider.chat_stream(
                messages=messages,
                tools=definitions,
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            ):
                if cancel.is_set():
                    raise TurnCancelled()
                if chunk.delta:
                    content_parts.append(chunk.delta)
                    yield TextChunk(chunk.delta)
                if chunk.thinking_delta:
                    yield ThinkingChunk(chunk.thinking_delta)
                if chunk.tool_calls_delta:
                    for tc_data in chunk.tool_calls_delta:
                        fn = tc_data.get("function", {})
                        args = fn.get("arguments", {})
                        if isinstance(args, str):
                            try:
                                args = json.loads(args)
                            except json.JSONDecodeError:
                                args = {"raw": args}
                        tool_calls.append(ToolCallRequest(
                            id=tc_data.get("id") or f"tc_{uuid.uuid4().hex[:8]}",
                            name=fn.get("name") or "unknown",
                            arguments=args if isinstance(args, dict) else {"raw": args},
                        ))
                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason
                if chunk.usage:
                    usage.input_tokens += int(chunk.usage.get("input_tokens", 0))
                    usage.output_tokens += int(chunk.usage.get("output_tokens", 0))
                    usage.cache_read_input_tokens += int(chunk.usage.get("cache_read_input_tokens", 0))
                    usage.cache_creation_input_tokens += int(chunk.usage.get("cache_creation_input_tokens", 0))

            content = "".join(content_parts)

            if not tool_calls:
                final_text = content
                turn.append({"role": "assistant", "content": content})
                _commit()
                break

            turn.append({
                "role": "assistant",
                "content": content or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments, ensure_ascii=False)},
                    }
                    for tc in tool_calls
                ],
            })

            interrupted = False
            for tc in tool_calls:
                if interrupted:
                    result = "Error: Skipped because the operator stopped this turn"
                else:
                    inv = ToolInvocation(id=tc.id, name=tc.name, arguments=tc.arguments)
                    yield inv
                    decision = await inv.decision()
                    if isinstance(decision, Allow):
                        params = decision.updated_input or tc.arguments
                        if tools is None:
                            result = f"Error: Tool '{tc.name}' not found"
                        else:
                            result = await tools.execute(tc.name, params)
                    else:
                        result = f"Error: {decision.message}"
                        interrupted = decision.interrupt
                turn.append({"role": "tool", "tool_call_id": tc.id, "name": tc.name, "content": result})
            _commit()

            if interrupted:
                finish_reason = "interrupted"
                logger.info("turn interrupted by tool denial in session {}", session_id)
                break
        else:
            finish_reason = "max_iterations"
            final_text = f"Stopped after {self.max_iterations} tool iterations."
            yield TextChunk(final_text)

        yield usage
        yield TurnDone(text=final_text, finish_reason=finish_reason)
