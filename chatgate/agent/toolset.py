"""Per-session tool registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from chatgate.agent.tools.ask import AskUserTool
from chatgate.agent.tools.filesystem import EditTool, GlobTool, GrepTool, ReadTool, WriteTool
from chatgate.agent.tools.plan import EnterPlanModeTool, ExitPlanModeTool, UpdatePlanTool, WritePlanTool
from chatgate.agent.tools.registry import ToolRegistry
from chatgate.agent.tools.shell import BashTool

if TYPE_CHECKING:
    from chatgate.broker.ask import AskBroker
    from chatgate.plan.artifacts import PlanArtifactStore
    from chatgate.session import Session

# Tools that never need operator authorization; the plan gate still applies.
INTERNAL_TOOLS = ("AskUser", "EnterPlanMode", "WritePlan", "UpdatePlan")


def build_tool_registry(
    session: Session,
    *,
    asks: AskBroker,
    artifacts: PlanArtifactStore,
    exec_timeout_s: int = 120,
) -> ToolRegistry:
    cwd = str(session.working_dir)
    tools = ToolRegistry()
    tools.register(BashTool(working_dir=cwd, timeout=exec_timeout_s))
    tools.register(ReadTool(working_dir=cwd))
    tools.register(WriteTool(working_dir=cwd))
    tools.register(EditTool(working_dir=cwd))
    tools.register(GlobTool(working_dir=cwd))
    tools.register(GrepTool(working_dir=cwd))
    tools.register(AskUserTool(asks=asks, channel_id=session.channel_id))
    tools.register(EnterPlanModeTool(session=session, artifacts=artifacts))
    tools.register(WritePlanTool(session=session, artifacts=artifacts))
    tools.register(UpdatePlanTool(session=session, artifacts=artifacts))
    tools.register(ExitPlanModeTool(session=session, artifacts=artifacts))
    return tools
