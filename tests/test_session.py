import asyncio

import pytest

from chatgate.broker.permissions import Allow, Deny
from chatgate.errors import EngineTransportCrash, SessionBusy, TurnCancelled
from chatgate.plan.gate import GateState, Transition
from chatgate.protocol import StatusKind
from chatgate.providers.base import StreamChunk
from chatgate.session import IMPLEMENT_PLAN_PROMPT, Session
from chatgate.web.database import Database
from tests.fakes import make_orchestrator, text_round, tool_round, wait_until


def _tool_results(orch) -> list[str]:
    history = orch.engine.history(orch.session.session_id)
    return [m["content"] for m in history if m["role"] == "tool"]


def _draft_plan(orch, content: str = "# Plan\n\n1. Use requests") -> str:
    gate = orch.session.gate
    gate.transition(Transition.ENTER)
    ref = orch.artifacts.create(content)
    gate.transition(Transition.WRITE_ARTIFACT, ref)
    return ref


# ── Permission flow ──────────────────────────────────────────────

def test_tool_waits_for_operator_approval(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(
            tmp_path, [tool_round("Bash", {"command": "echo hello"}), text_round("All clean.")]
        )
        task = asyncio.create_task(orch.run_turn("check the repo"))
        await wait_until(lambda: len(transport.permission_prompts) == 1)

        _channel, rid, rendered = transport.permission_prompts[0]
        assert "echo hello" in rendered
        assert orch.permissions.get(rid).status == "sent"
        assert not task.done()

        await orch.permissions.resolve(rid, approved=True)
        assert await task == "All clean."
        assert "hello" in _tool_results(orch)[0]
        assert orch.session.session_id.startswith("ses_")
        assert transport.kinds()[0] == StatusKind.TOOL
        assert transport.kinds()[-1] == StatusKind.DONE
        assert not orch.session.is_running

    asyncio.run(scenario())


def test_denial_becomes_tool_failure_and_turn_continues(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(
            tmp_path, [tool_round("Bash", {"command": "make deploy"}), text_round("Understood, skipping.")]
        )
        task = asyncio.create_task(orch.run_turn("deploy"))
        await wait_until(lambda: len(transport.permission_prompts) == 1)
        rid = transport.permission_prompts[0][1]

        await orch.permissions.resolve(rid, approved=False, message="not on a friday")
        assert await task == "Understood, skipping."
        assert _tool_results(orch) == ["Error: Permission denied: not on a friday"]

    asyncio.run(scenario())


def test_failed_prompt_display_denies(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(tmp_path)
        transport.fail_permission_prompt = True
        decision = await orch.authorize("Bash", {"command": "make"})
        assert isinstance(decision, Deny)
        assert len(orch.permissions) == 0

    asyncio.run(scenario())


def test_saved_rule_skips_the_broker(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(tmp_path)
        orch.rules.save_allow_rule(orch.session.working_dir, "Bash(git:*)")

        decision = await orch.authorize("Bash", {"command": "git log -n 5"})
        assert decision == Allow(updated_input={"command": "git log -n 5"})
        assert len(orch.permissions) == 0
        assert transport.permission_prompts == []

    asyncio.run(scenario())


def test_static_safety_vetoes_before_bypass(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(tmp_path, permission_mode="bypass")

        decision = await orch.authorize("Bash", {"command": "rm -rf /"}, bypass=True)
        assert isinstance(decision, Deny)
        assert decision.message.startswith("Blocked unsafe command")

        decision = await orch.authorize("Write", {"file_path": "/etc/hosts"}, bypass=True)
        assert isinstance(decision, Deny)
        assert decision.message.startswith("Access denied")

        assert await orch.authorize("Bash", {"command": "make"}, bypass=True) == Allow(updated_input={"command": "make"})
        assert len(orch.permissions) == 0
        assert any(s[4].get("blocked") for s in transport.statuses)

    asyncio.run(scenario())


def test_internal_tools_need_no_approval(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, _transport = make_orchestrator(tmp_path)
        for tool in ("AskUser", "EnterPlanMode", "mcp__plan__WritePlan"):
            assert isinstance(await orch.authorize(tool, {}), Allow)
        assert len(orch.permissions) == 0

    asyncio.run(scenario())


# ── Plan gate ────────────────────────────────────────────────────

def test_write_blocked_while_plan_drafted(tmp_path) -> None:
    async def scenario() -> None:
        target = tmp_path / "project" / "app.py"
        orch, _provider, transport = make_orchestrator(
            tmp_path,
            [tool_round("Write", {"file_path": str(target), "content": "x = 1"}), text_round("Blocked, noted.")],
            permission_mode="bypass",
        )
        _draft_plan(orch)

        assert await orch.run_turn("write it") == "Blocked, noted."
        assert _tool_results(orch)[0].startswith("Error: Blocked by plan mode")
        assert not target.exists()
        assert len(orch.permissions) == 0
        assert transport.permission_prompts == []

    asyncio.run(scenario())


def test_rejected_plan_feeds_commentary_into_next_turn(tmp_path) -> None:
    async def scenario() -> None:
        orch, provider, transport = make_orchestrator(
            tmp_path, [tool_round("ExitPlanMode", {}), text_round("Revising.")]
        )
        ref = _draft_plan(orch)

        task = asyncio.create_task(orch.run_turn("submit the plan"))
        await wait_until(lambda: orch.session.gate.approval_pending)
        _channel, shown_ref, content, rid = transport.plan_prompts[0]
        assert shown_ref == ref
        assert content == "# Plan\n\n1. Use requests"

        orch.resolve_plan(rid, "reject", "use a different library")
        await task
        assert orch.session.gate.state == GateState.EXPLORING
        assert orch.session.gate.artifact_ref == ref
        assert "use a different library" in orch.session.pending_injection

        assert await orch.run_turn("go on") == "Revising."
        prompt = provider.last_user_message()
        assert "use a different library" in prompt
        assert prompt.endswith("go on")
        assert orch.session.pending_injection is None

    asyncio.run(scenario())


def test_accepted_plan_resumes_the_turn(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(
            tmp_path, [tool_round("ExitPlanMode", {}), text_round("Implementing now.")]
        )
        _draft_plan(orch)

        task = asyncio.create_task(orch.run_turn("submit"))
        await wait_until(lambda: bool(transport.plan_prompts))
        orch.resolve_plan(transport.plan_prompts[0][3], "accept")

        assert await task == "Implementing now."
        assert orch.session.gate.state == GateState.DISABLED
        assert "approved" in _tool_results(orch)[0]
        assert orch.session.follow_up_prompt is None

    asyncio.run(scenario())


def test_cleared_plan_resets_session_and_queues_follow_up(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(tmp_path, [tool_round("ExitPlanMode", {})])
        ref = _draft_plan(orch)

        task = asyncio.create_task(orch.run_turn("submit"))
        await wait_until(lambda: bool(transport.plan_prompts))
        orch.resolve_plan(transport.plan_prompts[0][3], "clear")
        await task

        s = orch.session
        assert s.session_id is None
        assert s.gate.state == GateState.DISABLED
        assert ref in s.pending_injection
        assert "1. Use requests" in s.pending_injection
        assert orch.take_follow_up() == IMPLEMENT_PLAN_PROMPT
        assert orch.take_follow_up() is None

    asyncio.run(scenario())


def test_exit_plan_mode_without_draft_is_denied(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(tmp_path)
        orch.session.gate.transition(Transition.ENTER)
        decision = await orch.authorize("ExitPlanMode", {})
        assert isinstance(decision, Deny)
        assert transport.plan_prompts == []

    asyncio.run(scenario())


def test_resubmitting_a_plan_still_awaiting_approval_is_denied(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(
            tmp_path,
            [tool_round("ExitPlanMode", {}), tool_round("ExitPlanMode", {}, call_id="tc_2"), text_round("Waiting.")],
        )
        ref = _draft_plan(orch)
        task = asyncio.create_task(orch.run_turn("submit the plan"))
        await wait_until(lambda: orch.session.gate.approval_pending)
        rid = transport.plan_prompts[0][3]

        orch.stop()
        with pytest.raises(TurnCancelled):
            await task
        assert orch.session.gate.approval_pending

        assert await orch.run_turn("submit it again") == "Waiting."
        result = _tool_results(orch)[0]
        assert result.startswith(f"Error: Plan {ref} is already awaiting")
        assert len(transport.plan_prompts) == 1

        orch.resolve_plan(rid, "accept")
        assert orch.session.gate.state == GateState.DISABLED

    asyncio.run(scenario())


# ── Questions ────────────────────────────────────────────────────

def test_question_answer_reaches_the_engine(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(
            tmp_path,
            [
                tool_round("AskUser", {"question": "Which db?", "options": ["sqlite", "postgres"]}),
                text_round("Using postgres."),
            ],
        )
        task = asyncio.create_task(orch.run_turn("set up storage"))
        await wait_until(lambda: bool(transport.question_prompts))
        _channel, rid, question, options = transport.question_prompts[0]
        assert question == "Which db?"
        assert options[-1] == "Custom answer..."

        await orch.asks.answer(rid, 1)
        assert await task == "Using postgres."
        assert _tool_results(orch) == ["Operator answered: postgres"]
        assert all(s[4].get("tool_name") != "AskUser" for s in transport.statuses)

    asyncio.run(scenario())


def test_unanswered_question_fails_only_the_tool(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, _transport = make_orchestrator(
            tmp_path,
            [tool_round("AskUser", {"question": "Still there?"}), text_round("No answer, moving on.")],
            ask_timeout_s=0.05,
        )
        assert await orch.run_turn("go") == "No answer, moving on."
        assert _tool_results(orch)[0].startswith("Error: Question")
        assert len(orch.asks) == 0

    asyncio.run(scenario())


# ── Streaming ────────────────────────────────────────────────────

def test_text_segments_flush_around_tools(tmp_path) -> None:
    async def scenario() -> None:
        notes = tmp_path / "project" / "notes.txt"
        notes.parent.mkdir(exist_ok=True)
        notes.write_text("remember the milk\n", encoding="utf-8")
        first = [
            StreamChunk(delta="Let me look. "),
            *tool_round("Read", {"file_path": str(notes)}),
        ]
        orch, _provider, transport = make_orchestrator(
            tmp_path, [first, text_round("Found it.")], permission_mode="bypass"
        )

        assert await orch.run_turn("what do my notes say?") == "Let me look. Found it."
        assert "remember the milk" in _tool_results(orch)[0]

        ends = [(s[3], s[2]) for s in transport.statuses if s[1] == StatusKind.SEGMENT_END]
        assert ends == [(0, "Let me look. "), (1, "Found it.")]
        kinds = transport.kinds()
        assert kinds.index(StatusKind.SEGMENT_END) < kinds.index(StatusKind.TOOL)
        assert kinds[-1] == StatusKind.DONE
        assert orch.session.last_usage["input_tokens"] == 10
        assert transport.permission_prompts == []

    asyncio.run(scenario())


def test_iteration_cap_is_reported_to_the_operator(tmp_path) -> None:
    async def scenario() -> None:
        rounds = [tool_round("Glob", {"pattern": "*.py"}, call_id=f"tc_{i}") for i in range(5)]
        orch, _provider, transport = make_orchestrator(tmp_path, rounds, permission_mode="bypass")

        assert await orch.run_turn("keep looking") == "Stopped after 5 tool iterations."
        assert len(_tool_results(orch)) == 5
        segments = [s[2] for s in transport.statuses if s[1] == StatusKind.SEGMENT_END]
        assert segments == ["Stopped after 5 tool iterations."]

    asyncio.run(scenario())


# ── Cancellation / crash ─────────────────────────────────────────

def test_stop_aborts_without_resolving_the_request(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, transport = make_orchestrator(tmp_path, [tool_round("Bash", {"command": "make"})])
        assert orch.stop() is False

        task = asyncio.create_task(orch.run_turn("build"))
        await wait_until(lambda: len(transport.permission_prompts) == 1)
        with pytest.raises(SessionBusy):
            await orch.run_turn("another")

        assert orch.stop(interrupt=True) == "stopped"
        with pytest.raises(TurnCancelled):
            await task
        assert not orch.is_turn_active
        assert orch.consume_interrupt_flag() is True
        assert orch.consume_interrupt_flag() is False

        rid = transport.permission_prompts[0][1]
        fut = orch.permissions.future(rid)
        assert not fut.done()

        await orch.reset("new session")
        assert fut.result() == Deny(message="new session")
        assert len(orch.permissions) == 0
        assert orch.session.session_id is None

    asyncio.run(scenario())


def test_transport_crash_is_retried_once(tmp_path) -> None:
    async def scenario() -> None:
        orch, provider, transport = make_orchestrator(
            tmp_path, [EngineTransportCrash("connection reset"), text_round("recovered")]
        )
        assert await orch.run_turn("hello") == "recovered"
        assert len(provider.calls) == 2
        assert provider.last_user_message() == "hello"
        assert any("restarting" in n[1] for n in transport.notices)
        assert orch.session.last_error is None

    asyncio.run(scenario())


def test_crash_signature_in_generic_error_is_retried(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, _transport = make_orchestrator(
            tmp_path, [RuntimeError("engine process exited with code 1"), text_round("ok")]
        )
        assert await orch.run_turn("hello") == "ok"

    asyncio.run(scenario())


def test_second_crash_is_terminal(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, _transport = make_orchestrator(
            tmp_path, [EngineTransportCrash("down"), EngineTransportCrash("still down")]
        )
        with pytest.raises(EngineTransportCrash):
            await orch.run_turn("hello")
        assert "still down" in orch.session.last_error
        assert not orch.session.is_processing

    asyncio.run(scenario())


# ── Persistence ──────────────────────────────────────────────────

def test_session_is_persisted_and_restored(tmp_path) -> None:
    async def scenario() -> None:
        orch, _provider, _transport = make_orchestrator(tmp_path, [text_round("hi")])
        orch.db = Database(tmp_path / "chatgate.db")
        ref = _draft_plan(orch)

        await orch.run_turn("hello there")
        rec = orch.db.load_session("c1")
        assert rec["engine_session_id"] == orch.session.session_id
        assert rec["last_message_preview"] == "hello there"

        restored = Session.from_record(rec)
        assert restored.session_id == orch.session.session_id
        assert restored.gate.state == GateState.DRAFTED
        assert restored.gate.artifact_ref == ref

    asyncio.run(scenario())
