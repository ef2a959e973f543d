"""Exception hierarchy for the session orchestrator.

Tool vetoes (``ToolDenied`` subclasses) are recovered locally and handed to
the engine as a failed tool result. The rest surface to the turn caller or to
the UI-event handler.
"""
from __future__ import annotations


class GateError(Exception):
    """Base exception for all orchestrator errors."""


class ToolDenied(GateError):
    """A tool invocation was vetoed before it could run."""
    label = "Tool denied"

    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"{self.label}: {reason}")


class AuthorizationDenied(ToolDenied):
    """The operator declined the request."""
    label = "Permission denied"


class PlanGateBlocked(ToolDenied):
    """A mutating tool was attempted while the plan gate is enabled."""
    label = "Blocked by plan mode"


class UnsafeCommandBlocked(ToolDenied):
    """A shell command matched a destructive pattern."""
    label = "Blocked unsafe command"


class PathAccessDenied(ToolDenied):
    """A file path falls outside the allowed roots."""
    label = "Access denied"


class RequestExpired(GateError):
    """A broker request timed out, or a UI action referenced an unknown id."""
    def __init__(self, request_id: str, kind: str = "request", reason: str = ""):
        self.request_id = request_id
        self.kind = kind
        self.reason = reason
        msg = f"{kind.capitalize()} {request_id} expired"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class StateMismatch(GateError):
    """A UI action does not match the request currently pending."""
    def __init__(self, expected: str | None, got: str):
        self.expected = expected
        self.got = got
        super().__init__(f"Request mismatch: expected {expected}, got {got}")


class EngineTransportCrash(GateError):
    """The engine call failed at the transport level (process exit, lost connection)."""
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Engine transport crashed: {detail}")


class TurnCancelled(GateError):
    """The turn was stopped before or while it ran."""
    def __init__(self, reason: str = "Query cancelled"):
        self.reason = reason
        super().__init__(reason)


class SessionBusy(GateError):
    """A turn is already active for this channel."""
    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"A turn is already running for {channel_id}")
