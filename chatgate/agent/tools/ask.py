"""AskUser tool: multiple-choice question routed through the ask broker."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from chatgate.agent.tools.base import Tool
from chatgate.errors import RequestExpired

if TYPE_CHECKING:
    from chatgate.broker.ask import AskBroker


class AskUserTool(Tool):
    def __init__(self, *, asks: AskBroker, channel_id: str):
        self._asks = asks
        self._channel_id = channel_id

    @property
    def name(self) -> str:
        return "AskUser"

    @property
    def description(self) -> str:
        return (
            "Ask the operator a question with a few short options. "
            "The operator may also type a custom answer."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "question": {"type": "string", "description": "The question to ask"},
                "options": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Answer choices",
                },
            },
            "required": ["question"],
        }

    async def execute(self, question: str, options: list[str] | None = None, **kwargs: Any) -> str:
        try:
            answer = await self._asks.ask(
                channel_id=self._channel_id,
                question=question,
                options=[str(o) for o in (options or [])],
            )
        except RequestExpired as e:
            return f"Error: {e}"
        return f"Operator answered: {answer}"
