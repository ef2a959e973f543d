"""Chat transport interface and message rendering helpers."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from chatgate.plan.gate import base_tool_name
from chatgate.protocol import StatusKind


class ChatTransport(ABC):
    """What the orchestrator needs from a chat binding.

    The transport renders prompts and status; it reports operator actions back
    through the controller, never by calling the orchestrator directly.
    """

    @abstractmethod
    async def show_permission_prompt(self, channel_id: str, request_id: str, rendered: str) -> None:
        ...

    @abstractmethod
    async def show_question_prompt(
        self, channel_id: str, request_id: str, question: str, options: list[str]
    ) -> None:
        ...

    @abstractmethod
    async def show_plan_for_approval(
        self, channel_id: str, artifact_ref: str, content: str, request_id: str
    ) -> None:
        ...

    @abstractmethod
    async def send_status(
        self,
        channel_id: str,
        kind: StatusKind,
        text: str = "",
        segment_id: int | None = None,
        **extra: Any,
    ) -> None:
        ...

    @abstractmethod
    async def send_notice(self, channel_id: str, text: str, level: str = "info") -> None:
        ...

    async def permission_resolved(self, channel_id: str, request_id: str, action: str) -> None:
        """Retire the prompt for an answered request. Optional for transports."""
        return None


def _short(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def render_permission_request(tool_name: str, tool_input: str) -> str:
    """Operator-facing description of a tool call awaiting approval."""
    name = base_tool_name(tool_name)
    try:
        data = json.loads(tool_input)
    except (json.JSONDecodeError, TypeError):
        return f"Use tool: {name}\n{_short(str(tool_input))}"
    if not isinstance(data, dict):
        return f"Use tool: {name}\n{_short(tool_input)}"

    if name == "Bash":
        return f"Execute command:\n{data.get('command') or tool_input}"
    if name == "Read":
        return f"Read file:\n{data.get('file_path') or tool_input}"
    if name in ("Write", "Edit", "NotebookEdit"):
        return f"Modify file:\n{data.get('file_path') or data.get('notebook_path') or tool_input}"
    return f"Use tool: {name}\n{_short(tool_input)}"


def format_tool_status(tool_name: str, args: dict[str, Any]) -> str:
    """One-line status shown while a tool runs."""
    name = base_tool_name(tool_name)
    if name == "Bash":
        desc = args.get("description")
        cmd = _short(str(args.get("command") or ""), 80)
        return f"Running: {desc}" if desc else f"Running: {cmd}"
    if name in ("Read", "Write", "Edit", "NotebookEdit"):
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing", "NotebookEdit": "Editing"}[name]
        return f"{verb} {args.get('file_path') or args.get('notebook_path') or ''}".rstrip()
    if name in ("Glob", "Grep"):
        return f"Searching: {_short(str(args.get('pattern') or ''), 60)}"
    if name == "AskUser":
        return "Asking a question"
    if name in ("WritePlan", "UpdatePlan"):
        return "Writing plan"
    if name == "ExitPlanMode":
        return "Submitting plan for approval"
    return name
