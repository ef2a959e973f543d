"""Session orchestrator: drives one engine turn at a time for a chat channel.

For every tool the engine wants to run, the checks are applied in order:
1. plan gate (and plan approval for ExitPlanMode)
2. internal tools (AskUser, plan tools) are allowed outright
3. static safety (destructive commands, paths outside the allowed roots)
4. bypass mode (plan mode active, or permission_mode != interactive)
5. persisted always-allow rules
6. the permission broker, which suspends until the operator answers

A denial becomes a failed tool result the engine reads; it never ends the turn
unless the decision carries ``interrupt``.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger

from chatgate.agent.toolset import INTERNAL_TOOLS, build_tool_registry
from chatgate.broker.permissions import Allow, Deny, PermissionDecision
from chatgate.errors import (
    EngineTransportCrash,
    PlanGateBlocked,
    SessionBusy,
    ToolDenied,
    TurnCancelled,
)
from chatgate.plan.gate import GateState, PlanGate, base_tool_name, is_exit_plan_tool
from chatgate.protocol import StatusKind
from chatgate.providers.base import (
    SessionBound,
    TextChunk,
    ThinkingChunk,
    ToolInvocation,
    TurnDone,
    UsageSummary,
)
from chatgate.transport import format_tool_status, render_permission_request

if TYPE_CHECKING:
    from chatgate.broker.ask import AskBroker
    from chatgate.broker.permissions import PermissionBroker
    from chatgate.plan.artifacts import PlanArtifactStore
    from chatgate.providers.base import AgentEngine
    from chatgate.rules import AllowRuleStore
    from chatgate.security import SafetyChecker
    from chatgate.settings import GateSettings
    from chatgate.transport import ChatTransport
    from chatgate.web.database import Database

CRASH_SIGNATURE = "exited with code"
IMPLEMENT_PLAN_PROMPT = "Implement the approved plan."
NO_RESPONSE = "No response from the engine."

BASE_SYSTEM_PROMPT = """You are a coding agent operated through a chat channel.
Working directory: {working_dir}
You may only touch files inside these directories: {allowed}
Destructive shell commands are blocked. Ask the operator with AskUser when a
decision is ambiguous."""


@dataclass
class Session:
    channel_id: str
    working_dir: Path
    session_id: str | None = None
    created_at: float = field(default_factory=time.time)
    last_activity: float | None = None
    query_started: float | None = None
    is_processing: bool = False
    is_running: bool = False
    stop_requested: bool = False
    was_interrupted: bool = False
    current_tool: str | None = None
    last_tool: str | None = None
    last_error: str | None = None
    last_error_at: float | None = None
    last_usage: dict[str, int] | None = None
    last_message: str | None = None
    gate: PlanGate = field(default_factory=PlanGate)
    pending_injection: str | None = None
    follow_up_prompt: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "engine_session_id": self.session_id,
            "working_dir": str(self.working_dir),
            "plan_state": self.gate.to_dict(),
            "pending_injection": self.pending_injection,
            "last_activity": self.last_activity,
            "last_message_preview": (self.last_message or "")[:50] or None,
        }

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> Session:
        return cls(
            channel_id=str(rec["channel_id"]),
            working_dir=Path(rec.get("working_dir") or "."),
            session_id=rec.get("engine_session_id") or None,
            last_activity=rec.get("last_activity"),
            last_message=rec.get("last_message_preview"),
            gate=PlanGate.from_dict(rec.get("plan_state")),
            pending_injection=rec.get("pending_injection") or None,
        )

    def status(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "session_id": self.session_id,
            "working_dir": str(self.working_dir),
            "is_running": self.is_running,
            "running_for_s": round(time.time() - self.query_started, 1) if self.query_started else None,
            "current_tool": self.current_tool,
            "last_tool": self.last_tool,
            "last_error": self.last_error,
            "last_usage": self.last_usage,
            "last_activity": self.last_activity,
            "plan_state": self.gate.state.value,
            "plan_artifact": self.gate.artifact_ref,
            "plan_approval_id": self.gate.pending_approval_id,
        }


@dataclass
class _Segment:
    id: int = 0
    text: str = ""
    last_flush: float = 0.0


StopResult = Literal["stopped", "pending", False]


class SessionOrchestrator:
    def __init__(
        self,
        session: Session,
        *,
        engine: AgentEngine,
        permissions: PermissionBroker,
        asks: AskBroker,
        transport: ChatTransport,
        artifacts: PlanArtifactStore,
        safety: SafetyChecker,
        rules: AllowRuleStore,
        settings: GateSettings,
        db: Database | None = None,
    ):
        self.session = session
        self.engine = engine
        self.permissions = permissions
        self.asks = asks
        self.transport = transport
        self.artifacts = artifacts
        self.safety = safety
        self.rules = rules
        self.settings = settings
        self.db = db
        self.tools = build_tool_registry(
            session, asks=asks, artifacts=artifacts, exec_timeout_s=settings.exec_timeout_s
        )
        self._turn_lock = asyncio.Lock()
        self._cancel: asyncio.Event | None = None
        self._pump: asyncio.Task[str] | None = None
        self._reset_after_turn: str | None = None

    @property
    def channel_id(self) -> str:
        return self.session.channel_id

    @property
    def is_turn_active(self) -> bool:
        return self._turn_lock.locked()

    async def wait_idle(self) -> None:
        async with self._turn_lock:
            return

    # ── Turn entry ───────────────────────────────────────────────

    async def run_turn(self, prompt: str) -> str:
        """Run one turn to completion and return the final text.

        Raises ``SessionBusy`` if a turn is active, ``TurnCancelled`` if the
        turn was stopped, and ``EngineTransportCrash`` when the retry also fails.
        """
        if self._turn_lock.locked():
            raise SessionBusy(self.channel_id)
        async with self._turn_lock:
            s = self.session
            s.is_processing = True
            try:
                s.last_message = prompt
                if s.pending_injection:
                    prompt = f"{s.pending_injection}\n\n---\n\n{prompt}"
                    s.pending_injection = None

                try:
                    return await self._run_once(prompt)
                except EngineTransportCrash as e:
                    logger.warning("engine crashed on {}: {}; retrying with a fresh session", self.channel_id, e.detail)
                    await self.transport.send_notice(self.channel_id, "Engine crashed, restarting session...", "warning")
                    await self.reset("engine crashed", keep_context=True)
                    return await self._run_once(prompt)
            except EngineTransportCrash as e:
                self._record_error(str(e))
                raise
            finally:
                s.is_processing = False
                s.stop_requested = False
                if self._reset_after_turn:
                    reason, self._reset_after_turn = self._reset_after_turn, None
                    await self.reset(reason, keep_context=True)

    def _record_error(self, message: str) -> None:
        self.session.last_error = message[:200]
        self.session.last_error_at = time.time()

    async def _run_once(self, prompt: str) -> str:
        s = self.session
        if s.stop_requested:
            s.stop_requested = False
            logger.info("turn on {} cancelled before start", self.channel_id)
            raise TurnCancelled("Query cancelled")

        cancel = asyncio.Event()
        self._cancel = cancel
        s.is_running = True
        s.query_started = time.time()
        s.current_tool = None
        bypass = s.gate.enabled or self.settings.permission_mode != "interactive"
        logger.info(
            "turn started on {} (session={}, gate={}, bypass={})",
            self.channel_id, s.session_id, s.gate.state.value, bypass,
        )

        segment = _Segment()
        self._pump = asyncio.create_task(self._pump_events(prompt, bypass, cancel, segment))
        try:
            result = await self._pump
        except asyncio.CancelledError:
            if cancel.is_set() and self._pump.done():
                raise TurnCancelled("Query stopped") from None
            self._pump.cancel()
            raise
        except TurnCancelled:
            raise
        except EngineTransportCrash:
            raise
        except Exception as e:
            if CRASH_SIGNATURE in str(e):
                raise EngineTransportCrash(str(e)) from e
            self._record_error(str(e))
            logger.exception("turn failed on {}", self.channel_id)
            raise
        finally:
            if segment.text:
                await self._send_status(StatusKind.SEGMENT_END, segment.text, segment.id)
                segment.text = ""
            s.is_running = False
            s.stop_requested = False
            s.query_started = None
            s.current_tool = None
            self._cancel = None
            self._pump = None

        s.last_activity = time.time()
        s.last_error = None
        s.last_error_at = None
        self.persist()
        return result

    async def _pump_events(self, prompt: str, bypass: bool, cancel: asyncio.Event, segment: _Segment) -> str:
        s = self.session
        parts: list[str] = []
        throttle = self.settings.streaming_throttle_s
        min_chars = self.settings.segment_min_chars

        stream = self.engine.start_turn(
            prompt,
            session_id=s.session_id,
            system_prompt=self._system_prompt(),
            tools=self.tools,
            cancel=cancel,
        )
        try:
            async for event in stream:
                if cancel.is_set():
                    raise TurnCancelled("Query stopped")

                if isinstance(event, SessionBound):
                    if s.session_id != event.session_id:
                        s.session_id = event.session_id
                        logger.info("session bound on {}: {}", self.channel_id, event.session_id)
                        self.persist()

                elif isinstance(event, ThinkingChunk):
                    await self._send_status(StatusKind.THINKING, event.text)

                elif isinstance(event, TextChunk):
                    parts.append(event.text)
                    segment.text += event.text
                    now = time.monotonic()
                    if now - segment.last_flush >= throttle and len(segment.text) > min_chars:
                        await self._send_status(StatusKind.TEXT, segment.text, segment.id)
                        segment.last_flush = now

                elif isinstance(event, ToolInvocation):
                    if segment.text:
                        await self._send_status(StatusKind.SEGMENT_END, segment.text, segment.id)
                        segment.id += 1
                        segment.text = ""
                    display = format_tool_status(event.name, event.arguments)
                    s.current_tool = display
                    s.last_tool = display
                    if base_tool_name(event.name) != "AskUser":
                        await self._send_status(StatusKind.TOOL, display, tool_name=event.name)
                    event.resolve(await self.authorize(event.name, event.arguments, bypass=bypass, cancel=cancel))

                elif isinstance(event, UsageSummary):
                    s.last_usage = event.to_dict()
                    logger.info(
                        "usage on {}: in={} out={} cache_read={} cache_create={}",
                        self.channel_id, event.input_tokens, event.output_tokens,
                        event.cache_read_input_tokens, event.cache_creation_input_tokens,
                    )

                elif isinstance(event, TurnDone):
                    logger.info("turn finished on {} ({})", self.channel_id, event.finish_reason)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if segment.text:
            await self._send_status(StatusKind.SEGMENT_END, segment.text, segment.id)
            segment.text = ""
        await self._send_status(StatusKind.DONE, usage=s.last_usage or {})
        return "".join(parts) or NO_RESPONSE

    def _system_prompt(self) -> str:
        allowed = ", ".join(str(p) for p in self.safety.allowed_paths)
        prompt = BASE_SYSTEM_PROMPT.format(working_dir=self.session.working_dir, allowed=allowed)
        gate_prompt = self.session.gate.system_prompt()
        return f"{prompt}\n\n{gate_prompt}" if gate_prompt else prompt

    async def _send_status(self, kind: StatusKind, text: str = "", segment_id: int | None = None, **extra: Any) -> None:
        await self.transport.send_status(self.channel_id, kind, text, segment_id, **extra)

    # ── Authorization ────────────────────────────────────────────

    async def authorize(
        self,
        tool_name: str,
        args: dict[str, Any],
        *,
        bypass: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> PermissionDecision:
        gate = self.session.gate
        base = base_tool_name(tool_name)

        reason = gate.blocked_reason(tool_name)
        if reason:
            return await self._veto(PlanGateBlocked(tool_name, reason))

        if is_exit_plan_tool(tool_name):
            return await self._request_plan_approval(cancel)

        if base in INTERNAL_TOOLS:
            return Allow(updated_input=args)

        try:
            self.safety.check_tool(base, args, Path(self.session.working_dir))
        except ToolDenied as e:
            return await self._veto(e)

        if bypass:
            return Allow(updated_input=args)

        rule = self.rules.matches(self.session.working_dir, base, args)
        if rule:
            logger.info("tool {} allowed by rule {}", tool_name, rule)
            return Allow(updated_input=args)

        return await self._ask_permission(tool_name, args, cancel)

    async def _veto(self, err: ToolDenied) -> Deny:
        logger.warning("blocked {}: {}", err.tool_name, err.reason)
        await self._send_status(StatusKind.TOOL, f"BLOCKED: {err}", tool_name=err.tool_name, blocked=True)
        return Deny(message=str(err))

    async def _ask_permission(self, tool_name: str, args: dict[str, Any], cancel: asyncio.Event | None) -> PermissionDecision:
        raw = json.dumps(args, ensure_ascii=False)
        rendered = render_permission_request(tool_name, raw)
        request_id = await self.permissions.create(
            channel_id=self.channel_id, tool_name=tool_name, tool_input=raw, rendered=rendered
        )
        fut = self.permissions.future(request_id)
        try:
            await self.transport.show_permission_prompt(self.channel_id, request_id, rendered)
        except Exception as e:
            logger.exception("failed to show permission prompt {}", request_id)
            await self.permissions.resolve(request_id, approved=False, message=f"could not display prompt ({e})")
        await self.permissions.mark_sent(request_id)
        if fut is None:
            return Deny(message="Permission denied by user")
        return await self._wait_or_cancel(fut, cancel)

    async def _request_plan_approval(self, cancel: asyncio.Event | None) -> PermissionDecision:
        s = self.session
        gate = s.gate
        ref = gate.artifact_ref
        if gate.approval_pending:
            return Deny(message=f"Plan {ref} is already awaiting the operator's approval. Wait for their decision.")
        if gate.state != GateState.DRAFTED or not ref:
            return Deny(message="No plan to submit. Write one with WritePlan while in plan mode.")
        try:
            content = self.artifacts.body(ref)
        except FileNotFoundError:
            return Deny(message=f"Plan file not found: {ref}. Use WritePlan to create a new plan.")

        request_id = f"plan_{secrets.token_urlsafe(8)}"
        fut = gate.request_approval(request_id)
        self.persist()
        await self.transport.show_plan_for_approval(self.channel_id, ref, content, request_id)
        logger.info("plan {} submitted for approval ({})", ref, request_id)
        outcome = await self._wait_or_cancel(fut, cancel)
        self.persist()

        if outcome.action == "accept":
            return Allow(updated_input={})
        if outcome.action == "reject":
            feedback = outcome.commentary.strip()
            s.pending_injection = (
                f"[CONTEXT: The operator rejected your plan ({ref}).]\n\n"
                + (f"Operator feedback: {feedback}\n\n" if feedback else "")
                + "Revise the plan with UpdatePlan and call ExitPlanMode again."
            )
            self.persist()
            return Deny(message="The operator rejected the plan. Wait for feedback.", interrupt=True)

        s.pending_injection = (
            f"[CONTEXT: Resumed session with active plan]\n\nPlan file: {ref}\n\n{content}"
        )
        s.follow_up_prompt = IMPLEMENT_PLAN_PROMPT
        self._reset_after_turn = "context cleared"
        return Deny(message="The operator cleared the context; the plan continues in a new session.", interrupt=True)

    async def _wait_or_cancel(self, fut: asyncio.Future[Any], cancel: asyncio.Event | None) -> Any:
        """Wait for ``fut`` without resolving it if the turn is cancelled first."""
        if cancel is None:
            return await asyncio.shield(fut)
        stopper = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({fut, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if fut in done:
            return fut.result()
        raise TurnCancelled("Query stopped")

    # ── Plan approval (UI side) ──────────────────────────────────

    def resolve_plan(self, request_id: str, action: str, commentary: str = "") -> None:
        """Answer the pending plan approval. Raises RequestExpired / StateMismatch."""
        self.session.gate.resolve_approval(request_id, action, commentary)  # type: ignore[arg-type]
        logger.info("plan approval {} on {}: {}", request_id, self.channel_id, action)

    # ── Cancellation / lifecycle ─────────────────────────────────

    def stop(self, *, interrupt: bool = False) -> StopResult:
        """Abort the running turn ("stopped"), or the one about to start ("pending")."""
        s = self.session
        if interrupt:
            s.was_interrupted = True
        if s.is_running and self._cancel is not None:
            s.stop_requested = True
            self._cancel.set()
            if self._pump is not None and not self._pump.done():
                self._pump.cancel()
            logger.info("stop requested on {} (running turn)", self.channel_id)
            return "stopped"
        if s.is_processing:
            s.stop_requested = True
            logger.info("stop requested on {} (turn not started yet)", self.channel_id)
            return "pending"
        return False

    def consume_interrupt_flag(self) -> bool:
        was = self.session.was_interrupted
        self.session.was_interrupted = False
        return was

    def take_follow_up(self) -> str | None:
        prompt, self.session.follow_up_prompt = self.session.follow_up_prompt, None
        return prompt

    async def reset(self, reason: str, *, keep_context: bool = False) -> None:
        """Destroy the session: fail outstanding requests, drop the engine id, reset the gate."""
        s = self.session
        denied = await self.permissions.force_resolve_all(reason, channel_id=self.channel_id)
        expired = await self.asks.force_resolve_all(reason, channel_id=self.channel_id)
        if s.session_id:
            self.engine.forget(s.session_id)
        s.session_id = None
        s.last_activity = None
        s.gate.reset()
        if not keep_context:
            s.pending_injection = None
            s.follow_up_prompt = None
        self.persist()
        logger.info(
            "session reset on {}: {} ({} permission, {} question request(s) failed)",
            self.channel_id, reason, denied, expired,
        )

    def persist(self) -> None:
        if self.db is None:
            return
        try:
            self.db.save_session(self.session.to_record())
        except Exception as e:
            logger.warning("failed to persist session {}: {}", self.channel_id, e)
