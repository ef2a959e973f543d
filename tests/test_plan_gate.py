import asyncio

import pytest

from chatgate.errors import RequestExpired, StateMismatch
from chatgate.plan.gate import GateState, PlanGate, Transition, base_tool_name, is_write_tool


def _gate_in(state: GateState) -> PlanGate:
    gate = PlanGate()
    if state == GateState.DISABLED:
        return gate
    gate.transition(Transition.ENTER)
    if state == GateState.EXPLORING:
        return gate
    gate.transition(Transition.WRITE_ARTIFACT, "calm-flowing-river.md")
    if state == GateState.DRAFTED:
        return gate
    gate.transition(Transition.REQUEST_APPROVAL)
    return gate


def test_happy_path_transitions() -> None:
    gate = PlanGate()
    assert gate.transition(Transition.ENTER)
    assert gate.state == GateState.EXPLORING
    assert gate.transition(Transition.WRITE_ARTIFACT, "a.md")
    assert gate.state == GateState.DRAFTED
    assert gate.transition(Transition.UPDATE_ARTIFACT)
    assert gate.state == GateState.DRAFTED
    assert gate.transition(Transition.REQUEST_APPROVAL)
    assert gate.state == GateState.AWAITING_APPROVAL
    assert gate.transition(Transition.APPROVE)
    assert gate.state == GateState.DISABLED
    assert not gate.enabled


def test_guards_leave_state_unchanged() -> None:
    gate = PlanGate()
    assert not gate.transition(Transition.WRITE_ARTIFACT, "a.md")
    assert not gate.transition(Transition.REQUEST_APPROVAL)
    assert gate.state == GateState.DISABLED

    gate = _gate_in(GateState.DRAFTED)
    assert not gate.transition(Transition.ENTER)
    assert not gate.transition(Transition.WRITE_ARTIFACT, "b.md")
    assert not gate.transition(Transition.APPROVE)
    assert gate.state == GateState.DRAFTED
    assert gate.artifact_ref == "calm-flowing-river.md"


def test_reject_returns_to_exploring_and_clear_disables() -> None:
    gate = _gate_in(GateState.AWAITING_APPROVAL)
    assert gate.transition(Transition.REJECT)
    assert gate.state == GateState.EXPLORING
    assert gate.artifact_ref == "calm-flowing-river.md"

    assert gate.transition(Transition.CLEAR)
    assert gate.state == GateState.DISABLED
    assert gate.artifact_ref is None

    gate = _gate_in(GateState.EXPLORING)
    assert gate.transition(Transition.FORCE_DISABLE)
    assert gate.state == GateState.DISABLED


@pytest.mark.parametrize("state", list(GateState))
def test_write_tools_allowed_only_when_disabled(state: GateState) -> None:
    gate = _gate_in(state)
    for tool in ("Write", "Edit", "NotebookEdit", "mcp__ide__Edit"):
        assert gate.is_tool_allowed(tool) is (state == GateState.DISABLED)


def test_restricted_tools_while_exploring() -> None:
    gate = _gate_in(GateState.EXPLORING)
    for tool in ("Read", "Glob", "Grep", "Bash", "WritePlan", "AskUser", "ExitPlanMode"):
        assert gate.is_tool_allowed(tool)
    assert not gate.is_tool_allowed("WebFetch")
    assert "plan mode" in gate.blocked_reason("Write")


def test_awaiting_approval_blocks_everything_but_exit() -> None:
    gate = _gate_in(GateState.AWAITING_APPROVAL)
    assert gate.is_tool_allowed("ExitPlanMode")
    assert not gate.is_tool_allowed("Read")
    assert not gate.is_tool_allowed("Bash")


def test_base_tool_name_strips_server_prefix() -> None:
    assert base_tool_name("mcp__plan-mode__ExitPlanMode") == "ExitPlanMode"
    assert base_tool_name("Read") == "Read"
    assert is_write_tool("mcp__ide__NotebookEdit")
    assert not is_write_tool("WritePlan")


def test_approval_rejects_mismatched_id_without_mutation() -> None:
    async def scenario() -> None:
        gate = _gate_in(GateState.DRAFTED)
        fut = gate.request_approval("plan_1")
        assert gate.state == GateState.AWAITING_APPROVAL

        with pytest.raises(StateMismatch):
            gate.resolve_approval("plan_2", "accept")
        assert gate.state == GateState.AWAITING_APPROVAL
        assert not fut.done()

        outcome = gate.resolve_approval("plan_1", "reject", "use a different library")
        assert outcome.commentary == "use a different library"
        assert (await fut) == outcome
        assert gate.state == GateState.EXPLORING

        with pytest.raises(RequestExpired):
            gate.resolve_approval("plan_1", "accept")

    asyncio.run(scenario())


def test_request_approval_needs_a_draft() -> None:
    async def scenario() -> None:
        gate = _gate_in(GateState.EXPLORING)
        with pytest.raises(StateMismatch):
            gate.request_approval("plan_1")

    asyncio.run(scenario())


def test_reset_fails_pending_approval() -> None:
    async def scenario() -> None:
        gate = _gate_in(GateState.DRAFTED)
        fut = gate.request_approval("plan_1")
        gate.reset()
        assert gate.state == GateState.DISABLED
        assert gate.pending_approval_id is None
        with pytest.raises(RequestExpired):
            await fut

    asyncio.run(scenario())


def test_persisted_approval_comes_back_as_draft() -> None:
    async def scenario() -> None:
        gate = _gate_in(GateState.DRAFTED)
        gate.request_approval("plan_1")
        data = gate.to_dict()
        assert data["state"] == "drafted"

        restored = PlanGate.from_dict(data)
        assert restored.state == GateState.DRAFTED
        assert restored.artifact_ref == "calm-flowing-river.md"
        assert not restored.is_tool_allowed("Write")
        assert restored.is_tool_allowed("Read")

    asyncio.run(scenario())
    assert PlanGate.from_dict(None).state == GateState.DISABLED
    assert PlanGate.from_dict({"state": "bogus"}).state == GateState.DISABLED
