"""Status and prompt events pushed to the chat channel.

Every event uses one envelope:
  { type, channel_id, ts, payload }

Status events during a turn arrive in the order
thinking* / (text | tool)* / segment_end ... / done.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """All event types a chat client must handle."""
    STATUS = "status"
    PERMISSION_PROMPT = "permission_prompt"
    PERMISSION_RESOLVED = "permission_resolved"
    QUESTION_PROMPT = "question_prompt"
    PLAN_APPROVAL = "plan_approval"
    NOTICE = "notice"


class StatusKind(str, Enum):
    THINKING = "thinking"
    TOOL = "tool"
    TEXT = "text"
    SEGMENT_END = "segment_end"
    DONE = "done"


@dataclass
class ChannelEvent:
    type: str
    channel_id: str
    ts: float = field(default_factory=time.time)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "channel_id": self.channel_id,
            "ts": self.ts,
            "payload": self.payload,
        }


# ── Factory helpers ──────────────────────────────────────────────

def evt_status(channel_id: str, kind: StatusKind, **payload: Any) -> ChannelEvent:
    return ChannelEvent(
        type=EventType.STATUS.value,
        channel_id=channel_id,
        payload={"kind": kind.value, **payload},
    )


def evt_permission_prompt(channel_id: str, request_id: str, rendered: str) -> ChannelEvent:
    return ChannelEvent(
        type=EventType.PERMISSION_PROMPT.value,
        channel_id=channel_id,
        payload={
            "request_id": request_id,
            "text": rendered,
            "actions": ["allow", "always", "deny", "comment"],
        },
    )


def evt_permission_resolved(channel_id: str, request_id: str, action: str) -> ChannelEvent:
    return ChannelEvent(
        type=EventType.PERMISSION_RESOLVED.value,
        channel_id=channel_id,
        payload={"request_id": request_id, "action": action},
    )


def evt_question_prompt(channel_id: str, request_id: str, question: str, options: list[str]) -> ChannelEvent:
    return ChannelEvent(
        type=EventType.QUESTION_PROMPT.value,
        channel_id=channel_id,
        payload={"request_id": request_id, "question": question, "options": list(options)},
    )


def evt_plan_approval(channel_id: str, request_id: str, artifact_ref: str, content: str) -> ChannelEvent:
    return ChannelEvent(
        type=EventType.PLAN_APPROVAL.value,
        channel_id=channel_id,
        payload={
            "request_id": request_id,
            "artifact_ref": artifact_ref,
            "content": content,
            "actions": ["accept", "reject", "clear"],
        },
    )


def evt_notice(channel_id: str, text: str, level: str = "info") -> ChannelEvent:
    return ChannelEvent(
        type=EventType.NOTICE.value,
        channel_id=channel_id,
        payload={"text": text, "level": level},
    )
