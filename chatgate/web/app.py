"""FastAPI web application for chatgate.

Key properties:
- Operator input: `POST /api/channels/{id}/messages` routes text (turn, comment, custom answer)
- Operator actions: permission / question / plan endpoints keyed by request id
- Global SSE bus: `GET /event` (reconnect + replay via Last-Event-ID)
- SQLite persistence: sessions + permission audit + channel events
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from chatgate import __version__
from chatgate.agent.loop import ToolLoopEngine
from chatgate.controller import ChatController
from chatgate.errors import RequestExpired, SessionBusy, StateMismatch
from chatgate.providers.base import AgentEngine
from chatgate.providers.litellm_provider import LiteLLMProvider
from chatgate.settings import GateSettings
from chatgate.web.database import Database
from chatgate.web.event_bus import ChannelEventBus
from chatgate.web.transport import WebChatTransport


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _now_ts() -> float:
    return time.time()


class MessageCreateRequest(BaseModel):
    content: str = Field(min_length=1)


class PermissionActionRequest(BaseModel):
    action: str = Field(pattern="^(allow|always|deny|comment)$")


class AskAnswerRequest(BaseModel):
    option: int | None = Field(default=None, ge=0)
    label: str | None = None


class PlanActionRequest(BaseModel):
    action: str = Field(pattern="^(accept|reject|clear)$")
    commentary: str = ""
    channel_id: str | None = None


def build_engine(settings: GateSettings) -> AgentEngine:
    provider = LiteLLMProvider(
        api_key=settings.api_key or None,
        api_base=settings.api_base,
        default_model=settings.model,
    )
    return ToolLoopEngine(
        provider,
        model=settings.model,
        max_iterations=settings.max_iterations,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )


def create_app(settings: GateSettings | None = None, *, engine: AgentEngine | None = None) -> FastAPI:
    settings = settings or GateSettings()

    data_dir = settings.resolved_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    db = Database(settings.resolved_db_path())
    bus = ChannelEventBus(db)
    transport = WebChatTransport(bus)
    controller = ChatController(
        settings,
        engine=engine or build_engine(settings),
        transport=transport,
        db=db,
    )

    app = FastAPI(title="chatgate", version=__version__)
    app.state.controller = controller
    app.state.bus = bus
    app.state.db = db
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _require_token(request: Request, call_next):
        if settings.auth_token and request.method == "POST":
            expected = f"Bearer {settings.auth_token}"
            if request.headers.get("authorization") != expected:
                return JSONResponse(status_code=401, content={"detail": "unauthorized"})
        return await call_next(request)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await controller.close()
        db.close()

    # ── Health ───────────────────────────────────────────────────

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {
            "ok": True,
            "time": _now_iso(),
            "version": __version__,
            "permission_mode": settings.permission_mode,
            "llm_configured": bool(settings.api_key or settings.api_base),
        }

    # ── Channels ─────────────────────────────────────────────────

    @app.get("/api/channels")
    async def list_channels(limit: int = 50) -> list[dict[str, Any]]:
        return db.list_sessions(limit=limit)

    @app.post("/api/channels/{channel_id}/messages")
    async def post_message(channel_id: str, payload: MessageCreateRequest) -> dict[str, Any]:
        try:
            routed = await controller.submit(channel_id, payload.content)
        except SessionBusy:
            raise HTTPException(status_code=409, detail="channel is busy") from None
        return {"accepted": True, "channel_id": channel_id, "routed": routed}

    @app.post("/api/channels/{channel_id}/stop")
    async def stop_channel(channel_id: str) -> dict[str, Any]:
        result = await controller.stop(channel_id)
        if not result:
            return {"stopped": False, "reason": "no active query"}
        return {"stopped": True, "state": result}

    @app.post("/api/channels/{channel_id}/new")
    async def new_session(channel_id: str) -> dict[str, Any]:
        await controller.new_session(channel_id)
        return {"ok": True, "channel_id": channel_id}

    @app.post("/api/channels/{channel_id}/plan")
    async def enter_plan_mode(channel_id: str) -> dict[str, Any]:
        try:
            enabled = await controller.enter_plan_mode(channel_id)
        except SessionBusy:
            raise HTTPException(status_code=409, detail="channel is busy") from None
        return {"ok": enabled, "plan_state": controller.orchestrator(channel_id).session.gate.state.value}

    @app.get("/api/channels/{channel_id}/status")
    async def channel_status(channel_id: str) -> dict[str, Any]:
        return controller.status(channel_id)

    @app.get("/api/channels/{channel_id}/events")
    async def channel_events(channel_id: str, since: int | None = None, limit: int = 500) -> list[dict[str, Any]]:
        return bus.replay(channel_id=channel_id, since_id=since, limit=limit)

    @app.get("/api/channels/{channel_id}/permissions")
    async def channel_permissions(channel_id: str) -> list[dict[str, Any]]:
        return db.list_permission_requests(channel_id)

    # ── Operator actions ─────────────────────────────────────────

    @app.post("/api/permissions/{request_id}")
    async def permission_action(request_id: str, payload: PermissionActionRequest) -> dict[str, Any]:
        try:
            ok = await controller.handle_permission_action(request_id, payload.action)  # type: ignore[arg-type]
        except RequestExpired:
            raise HTTPException(status_code=410, detail="permission request expired") from None
        if not ok:
            raise HTTPException(status_code=409, detail="permission request already handled")
        return {"ok": True, "request_id": request_id, "action": payload.action}

    @app.post("/api/asks/{request_id}")
    async def ask_answer(request_id: str, payload: AskAnswerRequest) -> dict[str, Any]:
        if payload.option is None and not payload.label:
            raise HTTPException(status_code=400, detail="option or label is required")
        choice: int | str = payload.option if payload.option is not None else str(payload.label)
        try:
            ok = await controller.handle_ask_action(request_id, choice)
        except RequestExpired:
            raise HTTPException(status_code=410, detail="question expired") from None
        if not ok:
            raise HTTPException(status_code=400, detail="invalid answer")
        return {"ok": True, "request_id": request_id}

    @app.post("/api/plans/{request_id}")
    async def plan_action(request_id: str, payload: PlanActionRequest) -> dict[str, Any]:
        try:
            await controller.handle_plan_action(
                request_id, payload.action, payload.commentary, channel_id=payload.channel_id
            )
        except RequestExpired:
            raise HTTPException(status_code=410, detail="plan approval expired") from None
        except StateMismatch as e:
            logger.warning("plan action {} rejected: {}", request_id, e)
            raise HTTPException(status_code=409, detail=str(e)) from None
        return {"ok": True, "request_id": request_id, "action": payload.action}

    # ── SSE ──────────────────────────────────────────────────────

    @app.get("/event")
    async def stream_event_bus(request: Request, channel_id: str | None = None, since: int | None = None):
        header_last_id = request.headers.get("last-event-id")
        initial_last_id: int | None = None
        if since is not None:
            initial_last_id = int(since)
        elif header_last_id:
            try:
                initial_last_id = int(header_last_id)
            except ValueError:
                initial_last_id = None

        async def event_stream():
            last_id = initial_last_id

            connected = {
                "id": 0,
                "seq": 0,
                "ts": _now_ts(),
                "type": "connected",
                "channel_id": channel_id or "",
                "payload": {"server_time": _now_iso(), "latest_id": last_id or 0},
            }
            yield f"event: connected\ndata: {json.dumps(connected, ensure_ascii=False)}\n\n"

            while True:
                # ids up to the ceiling were stored before this replay ran
                ceiling = bus.latest_id
                for item in bus.replay(channel_id=channel_id, since_id=last_id):
                    last_id = int(item["id"])
                    yield f"id: {item['id']}\nevent: event\ndata: {json.dumps(item, ensure_ascii=False)}\n\n"
                last_id = max(last_id or 0, ceiling)

                if await request.is_disconnected():
                    break
                while not await bus.wait_after(last_id, timeout_s=settings.sse_wait_timeout_s):
                    if await request.is_disconnected():
                        return
                    hb = {"id": 0, "seq": 0, "ts": _now_ts(), "type": "heartbeat", "channel_id": channel_id or "", "payload": {}}
                    yield f"event: heartbeat\ndata: {json.dumps(hb, ensure_ascii=False)}\n\n"

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app
