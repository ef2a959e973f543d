"""Plan gate: explore-only mode until a written plan is approved.

States:
- disabled: every tool may run (subject to the other checks)
- exploring: read-only tools plus plan-artifact tools, no artifact yet
- drafted: an artifact exists and may be updated
- awaiting_approval: the plan was submitted; only the approval response may run

Approval is a single-resolution future, resolved by the UI with
accept / reject / clear.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from loguru import logger

from chatgate.errors import RequestExpired, StateMismatch


class GateState(str, Enum):
    DISABLED = "disabled"
    EXPLORING = "exploring"
    DRAFTED = "drafted"
    AWAITING_APPROVAL = "awaiting_approval"


class Transition(str, Enum):
    ENTER = "enter"
    WRITE_ARTIFACT = "write_artifact"
    UPDATE_ARTIFACT = "update_artifact"
    REQUEST_APPROVAL = "request_approval"
    APPROVE = "approve"
    REJECT = "reject"
    CLEAR = "clear"
    FORCE_DISABLE = "force_disable"


ApprovalAction = Literal["accept", "reject", "clear"]

RESTRICTED_TOOLS = (
    "Read",
    "Glob",
    "Grep",
    "Bash",
    "WritePlan",
    "UpdatePlan",
    "ExitPlanMode",
    "AskUser",
)
EXIT_PLAN_MODE_TOOLS = ("ExitPlanMode",)
WRITE_TOOLS = ("Write", "Edit", "NotebookEdit")

PLAN_MODE_SYSTEM_PROMPT = """
CRITICAL: PLAN MODE ACTIVE

You are in READ-ONLY planning mode. You MUST ONLY use these tools:
- Read, Glob, Grep: for exploring the codebase
- Bash: for read-only commands only (no modifications)
- WritePlan, UpdatePlan, ExitPlanMode: for creating and updating your plan
- AskUser: for clarifying questions

You CANNOT use Write, Edit, or any tool that modifies system state.

Explore the codebase and write a detailed implementation plan with WritePlan.
When done, call ExitPlanMode to present your plan for approval.
"""


def base_tool_name(tool_name: str) -> str:
    """Strip an ``mcp__<server>__`` prefix."""
    if tool_name.startswith("mcp__"):
        parts = tool_name.split("__", 2)
        if len(parts) == 3:
            return parts[2]
    return tool_name


def is_write_tool(tool_name: str) -> bool:
    return base_tool_name(tool_name) in WRITE_TOOLS


def is_exit_plan_tool(tool_name: str) -> bool:
    return base_tool_name(tool_name) in EXIT_PLAN_MODE_TOOLS


@dataclass
class ApprovalOutcome:
    action: ApprovalAction
    artifact_ref: str
    commentary: str = ""


class PlanGate:
    def __init__(self) -> None:
        self.state = GateState.DISABLED
        self.artifact_ref: str | None = None
        self.entered_at: float | None = None
        self.restricted_tools: tuple[str, ...] = ()
        self._approval_id: str | None = None
        self._approval_future: asyncio.Future[ApprovalOutcome] | None = None

    @property
    def enabled(self) -> bool:
        return self.state != GateState.DISABLED

    @property
    def approval_pending(self) -> bool:
        return self.state == GateState.AWAITING_APPROVAL

    @property
    def pending_approval_id(self) -> str | None:
        return self._approval_id

    # ── Transitions ──────────────────────────────────────────────

    def transition(self, action: Transition, artifact_ref: str | None = None) -> bool:
        """Apply ``action`` if its guard holds. Returns False (state unchanged) otherwise."""
        s = self.state
        if action == Transition.ENTER:
            if s != GateState.DISABLED:
                return self._reject(action, "plan mode already active")
            self.state = GateState.EXPLORING
            self.artifact_ref = None
            self.entered_at = time.time()
            self.restricted_tools = RESTRICTED_TOOLS
        elif action == Transition.WRITE_ARTIFACT:
            if s != GateState.EXPLORING or self.artifact_ref is not None:
                return self._reject(action, "a plan artifact is already active")
            if not artifact_ref:
                return self._reject(action, "missing artifact reference")
            self.artifact_ref = artifact_ref
            self.state = GateState.DRAFTED
        elif action == Transition.UPDATE_ARTIFACT:
            if s not in (GateState.EXPLORING, GateState.DRAFTED) or self.artifact_ref is None:
                return self._reject(action, "no active plan artifact")
            self.state = GateState.DRAFTED
        elif action == Transition.REQUEST_APPROVAL:
            if s != GateState.DRAFTED or self.artifact_ref is None:
                return self._reject(action, "no drafted plan to submit")
            self.state = GateState.AWAITING_APPROVAL
        elif action == Transition.APPROVE:
            if s != GateState.AWAITING_APPROVAL:
                return self._reject(action, "no plan awaiting approval")
            self._disable()
        elif action == Transition.REJECT:
            if s != GateState.AWAITING_APPROVAL:
                return self._reject(action, "no plan awaiting approval")
            # artifact is kept so the next draft can refine it
            self.state = GateState.EXPLORING
        elif action == Transition.CLEAR:
            self._disable()
            self.artifact_ref = None
        elif action == Transition.FORCE_DISABLE:
            self._disable()
        else:
            return self._reject(action, "unknown transition")

        logger.debug("plan gate {} -> {} ({})", s.value, self.state.value, action.value)
        return True

    def _disable(self) -> None:
        self.state = GateState.DISABLED
        self.restricted_tools = ()
        self.entered_at = None

    def _reject(self, action: Transition, why: str) -> bool:
        logger.warning("plan gate: cannot {} from {}: {}", action.value, self.state.value, why)
        return False

    def reset(self) -> None:
        self.transition(Transition.CLEAR)
        self._cancel_approval()

    # ── Tool predicate ───────────────────────────────────────────

    def is_tool_allowed(self, tool_name: str) -> bool:
        return self.blocked_reason(tool_name) is None

    def blocked_reason(self, tool_name: str) -> str | None:
        if self.state == GateState.DISABLED:
            return None
        base = base_tool_name(tool_name)
        if self.state == GateState.AWAITING_APPROVAL:
            if base in EXIT_PLAN_MODE_TOOLS:
                return None
            if is_write_tool(base):
                return "Plan approval is pending. Wait for the operator before making changes."
            return "Plan approval is pending. No other tools may run until the plan is answered."
        if is_write_tool(base):
            return f"{base} is not available in plan mode. Write your plan with WritePlan and call ExitPlanMode."
        if base not in self.restricted_tools:
            return f"{base} is not available in plan mode. Allowed tools: {', '.join(self.restricted_tools)}."
        return None

    def system_prompt(self) -> str:
        return PLAN_MODE_SYSTEM_PROMPT if self.enabled else ""

    # ── Approval broker ──────────────────────────────────────────

    def request_approval(self, request_id: str) -> asyncio.Future[ApprovalOutcome]:
        """Move to awaiting_approval and return the future the UI will resolve."""
        if not self.transition(Transition.REQUEST_APPROVAL):
            raise StateMismatch(GateState.DRAFTED.value, self.state.value)
        fut: asyncio.Future[ApprovalOutcome] = asyncio.get_running_loop().create_future()
        self._approval_id = request_id
        self._approval_future = fut
        return fut

    def resolve_approval(self, request_id: str, action: ApprovalAction, commentary: str = "") -> ApprovalOutcome:
        """Answer the pending approval. Raises on unknown or mismatched ids without mutating state."""
        if self._approval_id is None or self._approval_future is None:
            raise RequestExpired(request_id, "plan approval", "no pending approval")
        if request_id != self._approval_id:
            raise StateMismatch(self._approval_id, request_id)

        ref = self.artifact_ref or ""
        if action == "accept":
            self.transition(Transition.APPROVE)
        elif action == "reject":
            self.transition(Transition.REJECT)
        elif action == "clear":
            self.transition(Transition.CLEAR)
        else:
            raise ValueError(f"unknown approval action: {action}")

        outcome = ApprovalOutcome(action=action, artifact_ref=ref, commentary=commentary)
        fut = self._approval_future
        self._approval_id = None
        self._approval_future = None
        if not fut.done():
            fut.set_result(outcome)
        return outcome

    def _cancel_approval(self) -> None:
        fut = self._approval_future
        rid = self._approval_id
        self._approval_id = None
        self._approval_future = None
        if fut is not None and not fut.done():
            fut.set_exception(RequestExpired(rid or "", "plan approval", "session reset"))

    # ── Persistence ──────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        state = self.state
        # an unanswered approval cannot survive a restart
        if state == GateState.AWAITING_APPROVAL:
            state = GateState.DRAFTED
        return {
            "state": state.value,
            "artifact_ref": self.artifact_ref,
            "entered_at": self.entered_at,
            "restricted_tools": list(self.restricted_tools),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PlanGate:
        gate = cls()
        if not data:
            return gate
        try:
            gate.state = GateState(str(data.get("state") or "disabled"))
        except ValueError:
            gate.state = GateState.DISABLED
        if gate.state == GateState.AWAITING_APPROVAL:
            gate.state = GateState.DRAFTED
        ref = data.get("artifact_ref")
        gate.artifact_ref = ref if isinstance(ref, str) and ref else None
        if gate.state == GateState.DRAFTED and gate.artifact_ref is None:
            gate.state = GateState.EXPLORING
        gate.entered_at = data.get("entered_at")
        tools = data.get("restricted_tools")
        if gate.enabled:
            gate.restricted_tools = tuple(tools) if isinstance(tools, list) and tools else RESTRICTED_TOOLS
        return gate
