"""Chat controller: routes operator input to the right broker or session.

One controller per process. It owns the process-wide brokers and one
``SessionOrchestrator`` per channel. Operator text is routed in this order:

1. a pending "deny with comment" on the channel takes the text as the reason
2. a question waiting for a custom answer takes the text as the answer
3. a leading ``!`` silently interrupts the active turn and sends the rest
4. otherwise a new turn starts (rejected with ``SessionBusy`` if one is active)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Literal

from loguru import logger

from chatgate.broker.ask import CUSTOM_ANSWER, AskBroker, AskRequest
from chatgate.broker.permissions import PermissionBroker, decode_tool_input
from chatgate.errors import EngineTransportCrash, RequestExpired, SessionBusy, TurnCancelled
from chatgate.plan.artifacts import PlanArtifactStore
from chatgate.plan.gate import GateState, Transition, base_tool_name
from chatgate.providers.base import AgentEngine
from chatgate.rules import AllowRuleStore, describe_rule, generate_rule
from chatgate.security import SafetyChecker
from chatgate.session import Session, SessionOrchestrator
from chatgate.settings import GateSettings
from chatgate.transport import ChatTransport
from chatgate.web.database import Database

INTERRUPT_PREFIX = "!"

PermissionAction = Literal["allow", "always", "deny", "comment"]
Routed = Literal["comment", "custom_answer", "turn", "ignored"]


class ChatController:
    def __init__(
        self,
        settings: GateSettings,
        *,
        engine: AgentEngine,
        transport: ChatTransport,
        db: Database | None = None,
        rules: AllowRuleStore | None = None,
    ):
        self.settings = settings
        self.engine = engine
        self.transport = transport
        self.db = db
        self.permissions = PermissionBroker(db=db)
        self.asks = AskBroker(timeout_s=settings.ask_timeout_s, display=self._display_question)
        self.artifacts = PlanArtifactStore(settings.resolved_plans_dir())
        self.safety = SafetyChecker.from_settings(settings)
        self.rules = rules or AllowRuleStore()
        self.orchestrators: dict[str, SessionOrchestrator] = {}
        self._tasks: dict[str, asyncio.Task[str | None]] = {}

    async def _display_question(self, req: AskRequest) -> None:
        await self.transport.show_question_prompt(req.channel_id, req.request_id, req.question, req.options)

    # ── Sessions ─────────────────────────────────────────────────

    def orchestrator(self, channel_id: str) -> SessionOrchestrator:
        orch = self.orchestrators.get(channel_id)
        if orch is not None:
            return orch

        session: Session | None = None
        if self.db is not None:
            rec = self.db.load_session(channel_id)
            if rec:
                session = Session.from_record(rec)
                logger.info("restored session for {} (engine session {})", channel_id, session.session_id)
        if session is None:
            session = Session(channel_id=channel_id, working_dir=self.settings.resolved_working_dir())

        orch = SessionOrchestrator(
            session,
            engine=self.engine,
            permissions=self.permissions,
            asks=self.asks,
            transport=self.transport,
            artifacts=self.artifacts,
            safety=self.safety,
            rules=self.rules,
            settings=self.settings,
            db=self.db,
        )
        self.orchestrators[channel_id] = orch
        return orch

    def is_busy(self, channel_id: str) -> bool:
        task = self._tasks.get(channel_id)
        if task is not None and not task.done():
            return True
        orch = self.orchestrators.get(channel_id)
        return bool(orch and orch.is_turn_active)

    # ── Operator text ────────────────────────────────────────────

    async def submit(self, channel_id: str, text: str) -> Routed:
        """Route operator text; a turn, if any, runs in a background task."""
        if await self.permissions.resolve_comment(channel_id, text):
            await self.transport.send_notice(channel_id, "Denied with comment.")
            return "comment"
        if await self.asks.answer_custom_text(channel_id, text):
            return "custom_answer"

        orch = self.orchestrator(channel_id)
        prompt = text
        if text.startswith(INTERRUPT_PREFIX):
            prompt = text[len(INTERRUPT_PREFIX):].strip()
            if self.is_busy(channel_id):
                orch.stop(interrupt=True)
                await self._wait_task(channel_id)
            if not prompt:
                return "ignored"
        elif self.is_busy(channel_id):
            raise SessionBusy(channel_id)

        self._tasks[channel_id] = asyncio.create_task(self._run(orch, prompt))
        return "turn"

    async def handle_text(self, channel_id: str, text: str) -> str | None:
        """Route operator text and, when it starts a turn, wait for its answer."""
        routed = await self.submit(channel_id, text)
        if routed != "turn":
            return None
        return await self._tasks[channel_id]

    async def _wait_task(self, channel_id: str) -> None:
        task = self._tasks.get(channel_id)
        if task is not None and not task.done():
            await asyncio.wait({task})
        orch = self.orchestrators.get(channel_id)
        if orch is not None:
            await orch.wait_idle()

    async def _run(self, orch: SessionOrchestrator, prompt: str) -> str | None:
        channel_id = orch.channel_id
        result: str | None = None
        next_prompt: str | None = prompt
        while next_prompt:
            try:
                result = await orch.run_turn(next_prompt)
            except TurnCancelled as e:
                if not orch.consume_interrupt_flag():
                    await self.transport.send_notice(channel_id, e.reason, "warning")
                return None
            except EngineTransportCrash as e:
                await self.transport.send_notice(channel_id, f"Error: {e.detail}", "error")
                return None
            except SessionBusy:
                await self.transport.send_notice(channel_id, "A query is already running.", "warning")
                return None
            except Exception as e:
                logger.exception("turn failed on {}", channel_id)
                await self.transport.send_notice(channel_id, f"Error: {e}", "error")
                return None
            next_prompt = orch.take_follow_up()
            if next_prompt:
                logger.info("running follow-up prompt on {}", channel_id)
        return result

    # ── Operator actions ─────────────────────────────────────────

    async def handle_permission_action(self, request_id: str, action: PermissionAction) -> bool:
        rec = self.permissions.get(request_id)
        if rec is None:
            raise RequestExpired(request_id, "permission")
        channel_id = rec.channel_id

        if action == "comment":
            ok = await self.permissions.request_comment(request_id)
            if ok:
                await self.transport.send_notice(channel_id, "Reply with the reason for denying.")
            return ok

        if action == "always":
            project_dir = self.orchestrator(channel_id).session.working_dir
            try:
                rule = generate_rule(base_tool_name(rec.tool_name), decode_tool_input(rec.tool_input), project_dir)
                if self.rules.save_allow_rule(project_dir, rule):
                    await self.transport.send_notice(channel_id, f"{describe_rule(rule)}.")
            except (ValueError, OSError) as e:
                logger.warning("could not save allow rule for {}: {}", request_id, e)
            ok = await self.permissions.resolve(request_id, approved=True)
        elif action == "allow":
            ok = await self.permissions.resolve(request_id, approved=True)
        elif action == "deny":
            ok = await self.permissions.resolve(request_id, approved=False)
        else:
            raise ValueError(f"unknown permission action: {action}")

        if ok:
            await self.transport.permission_resolved(channel_id, request_id, action)
        return ok

    async def handle_ask_action(self, request_id: str, choice: int | str) -> bool:
        rec = self.asks.get(request_id)
        if rec is None:
            raise RequestExpired(request_id, "question")
        ok = await self.asks.answer(request_id, choice)
        label = rec.options[choice] if isinstance(choice, int) and 0 <= choice < len(rec.options) else choice
        if ok and label == CUSTOM_ANSWER:
            await self.transport.send_notice(rec.channel_id, "Type your answer.")
        return ok

    async def handle_plan_action(
        self,
        request_id: str,
        action: str,
        commentary: str = "",
        *,
        channel_id: str | None = None,
    ) -> None:
        """Answer a plan approval. Raises RequestExpired / StateMismatch."""
        if action not in ("accept", "reject", "clear"):
            raise ValueError(f"unknown plan action: {action}")
        if channel_id is None:
            channel_id = self._channel_for_plan(request_id)
            if channel_id is None:
                raise RequestExpired(request_id, "plan approval")
        self.orchestrator(channel_id).resolve_plan(request_id, action, commentary)

    def _channel_for_plan(self, request_id: str) -> str | None:
        for channel_id, orch in self.orchestrators.items():
            if orch.session.gate.pending_approval_id == request_id:
                return channel_id
        return None

    # ── Commands ─────────────────────────────────────────────────

    async def stop(self, channel_id: str) -> str | bool:
        orch = self.orchestrators.get(channel_id)
        if orch is None:
            return False
        return orch.stop()

    async def new_session(self, channel_id: str) -> None:
        orch = self.orchestrator(channel_id)
        if self.is_busy(channel_id):
            orch.stop(interrupt=True)
            await self._wait_task(channel_id)
        await orch.reset("new session")
        await self.transport.send_notice(channel_id, "Started a new session.")

    async def enter_plan_mode(self, channel_id: str) -> bool:
        if self.is_busy(channel_id):
            raise SessionBusy(channel_id)
        orch = self.orchestrator(channel_id)
        if not orch.session.gate.transition(Transition.ENTER):
            await self.transport.send_notice(channel_id, "Plan mode is already active.", "warning")
            return False
        orch.persist()
        await self.transport.send_notice(channel_id, "Plan mode enabled. Tools are read-only until a plan is approved.")
        return True

    def status(self, channel_id: str) -> dict[str, Any]:
        orch = self.orchestrator(channel_id)
        info = orch.session.status()
        info["busy"] = self.is_busy(channel_id)
        info["plan_mode"] = orch.session.gate.state != GateState.DISABLED
        info["pending_permissions"] = [r.to_dict() for r in self.permissions.pending_for_channel(channel_id)]
        info["allow_rules"] = self.rules.load_allow_rules(Path(orch.session.working_dir))
        return info

    async def close(self) -> None:
        for channel_id, task in list(self._tasks.items()):
            if not task.done():
                self.orchestrators[channel_id].stop(interrupt=True)
                task.cancel()
        await self.permissions.force_resolve_all("server shutting down")
        await self.asks.force_resolve_all("server shutting down")
