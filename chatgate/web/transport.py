"""Chat transport that publishes prompts and status onto the event bus."""

from __future__ import annotations

from typing import Any

from chatgate.protocol import (
    StatusKind,
    evt_notice,
    evt_permission_prompt,
    evt_permission_resolved,
    evt_plan_approval,
    evt_question_prompt,
    evt_status,
)
from chatgate.transport import ChatTransport
from chatgate.web.event_bus import ChannelEventBus


class WebChatTransport(ChatTransport):
    def __init__(self, bus: ChannelEventBus):
        self._bus = bus

    async def show_permission_prompt(self, channel_id: str, request_id: str, rendered: str) -> None:
        await self._bus.publish(evt_permission_prompt(channel_id, request_id, rendered))

    async def show_question_prompt(
        self, channel_id: str, request_id: str, question: str, options: list[str]
    ) -> None:
        await self._bus.publish(evt_question_prompt(channel_id, request_id, question, options))

    async def show_plan_for_approval(
        self, channel_id: str, artifact_ref: str, content: str, request_id: str
    ) -> None:
        await self._bus.publish(evt_plan_approval(channel_id, request_id, artifact_ref, content))

    async def send_status(
        self,
        channel_id: str,
        kind: StatusKind,
        text: str = "",
        segment_id: int | None = None,
        **extra: Any,
    ) -> None:
        payload: dict[str, Any] = dict(extra)
        if text:
            payload["text"] = text
        if segment_id is not None:
            payload["segment_id"] = segment_id
        await self._bus.publish(evt_status(channel_id, kind, **payload))

    async def send_notice(self, channel_id: str, text: str, level: str = "info") -> None:
        await self._bus.publish(evt_notice(channel_id, text, level))

    async def permission_resolved(self, channel_id: str, request_id: str, action: str) -> None:
        await self._bus.publish(evt_permission_resolved(channel_id, request_id, action))
