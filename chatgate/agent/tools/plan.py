"""Plan-mode tools: EnterPlanMode, WritePlan, UpdatePlan, ExitPlanMode.

Approval for ExitPlanMode happens before the tool runs; by the time
``execute`` is called the operator has accepted the plan.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from chatgate.agent.tools.base import Tool
from chatgate.plan.gate import PLAN_MODE_SYSTEM_PROMPT, Transition

if TYPE_CHECKING:
    from chatgate.plan.artifacts import PlanArtifactStore
    from chatgate.session import Session


class _PlanTool(Tool):
    def __init__(self, *, session: Session, artifacts: PlanArtifactStore):
        self._session = session
        self._artifacts = artifacts


class EnterPlanModeTool(_PlanTool):
    @property
    def name(self) -> str:
        return "EnterPlanMode"

    @property
    def description(self) -> str:
        return "Switch to read-only planning mode before making non-trivial changes."

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> str:
        if not self._session.gate.transition(Transition.ENTER):
            return "Error: Plan mode is already active"
        return "Plan mode enabled.\n" + PLAN_MODE_SYSTEM_PROMPT


class WritePlanTool(_PlanTool):
    @property
    def name(self) -> str:
        return "WritePlan"

    @property
    def description(self) -> str:
        return "Create the plan document (markdown). Only one plan may be active; use UpdatePlan to revise it."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "Plan content in markdown"},
            },
            "required": ["content"],
        }

    async def execute(self, content: str, **kwargs: Any) -> str:
        gate = self._session.gate
        if not gate.enabled:
            return "Error: Plan mode is not active. Call EnterPlanMode first."
        if gate.artifact_ref:
            return f"Error: A plan already exists ({gate.artifact_ref}). Use UpdatePlan to modify it."
        ref = self._artifacts.create(content, session_id=self._session.session_id)
        if not gate.transition(Transition.WRITE_ARTIFACT, ref):
            return "Error: Cannot write a plan in the current state"
        return f"Plan created: {ref}\n\nCall ExitPlanMode when ready for approval."


class UpdatePlanTool(_PlanTool):
    @property
    def name(self) -> str:
        return "UpdatePlan"

    @property
    def description(self) -> str:
        return "Revise the active plan by replacing old_string with new_string."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "old_string": {"type": "string", "description": "Exact text to replace"},
                "new_string": {"type": "string", "description": "Replacement text"},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
            },
            "required": ["old_string", "new_string"],
        }

    async def execute(self, old_string: str, new_string: str, replace_all: bool = False, **kwargs: Any) -> str:
        gate = self._session.gate
        ref = gate.artifact_ref
        if not ref:
            return "Error: No active plan. Use WritePlan first."
        try:
            self._artifacts.update(ref, old_string, new_string, replace_all=replace_all)
        except FileNotFoundError:
            return "Error: Plan file not found. It may have been deleted."
        except ValueError as e:
            return f"Error: {e}"
        gate.transition(Transition.UPDATE_ARTIFACT)
        return f"Plan updated: {ref}\n\nCall ExitPlanMode when ready for approval."


class ExitPlanModeTool(_PlanTool):
    @property
    def name(self) -> str:
        return "ExitPlanMode"

    @property
    def description(self) -> str:
        return "Submit the active plan for operator approval. Blocks until the operator answers."

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> str:
        return "The operator approved the plan. Proceed with the implementation."
