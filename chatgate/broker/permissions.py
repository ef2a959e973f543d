"""Permission broker: suspends a tool call until the operator answers.

Lifecycle of a request:
- pending: created by the engine-call site, future registered in the same step
- sent: the prompt has been shown in the chat
- awaiting_comment: operator chose "deny with comment"; the next text reply resolves it
- approved/denied: resolved exactly once, then removed from the store

There is no timeout. Only a UI action or a session reset resolves a request.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Union

from loguru import logger

from chatgate.errors import AuthorizationDenied

if TYPE_CHECKING:
    from chatgate.web.database import Database


RequestStatus = Literal["pending", "sent", "approved", "denied", "awaiting_comment"]


@dataclass(frozen=True)
class Allow:
    updated_input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Deny:
    message: str
    interrupt: bool = False


PermissionDecision = Union[Allow, Deny]


@dataclass
class PermissionRequest:
    request_id: str
    channel_id: str
    tool_name: str
    tool_input: str
    rendered: str
    status: RequestStatus = "pending"
    response: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "channel_id": self.channel_id,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "rendered": self.rendered,
            "status": self.status,
            "response": self.response,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def new_request_id() -> str:
    return f"perm_{secrets.token_urlsafe(12)}"


def decode_tool_input(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return data if isinstance(data, dict) else {}


def denial_message(tool_name: str, comment: str | None) -> str:
    if comment:
        return str(AuthorizationDenied(tool_name, comment))
    return "Permission denied by user"


class PermissionBroker:
    def __init__(self, *, db: Database | None = None):
        self._db = db
        self._records: dict[str, PermissionRequest] = {}
        self._pending: dict[str, asyncio.Future[PermissionDecision]] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        *,
        channel_id: str,
        tool_name: str,
        tool_input: str,
        rendered: str,
    ) -> str:
        """Register a request and its future atomically; returns the request id."""
        request_id = new_request_id()
        fut: asyncio.Future[PermissionDecision] = asyncio.get_running_loop().create_future()
        rec = PermissionRequest(
            request_id=request_id,
            channel_id=channel_id,
            tool_name=tool_name,
            tool_input=tool_input,
            rendered=rendered,
        )
        async with self._lock:
            self._records[request_id] = rec
            self._pending[request_id] = fut
        if self._db is not None:
            self._db.record_permission_request(rec.to_dict())
        logger.info("permission request {} created for {} on {}", request_id, tool_name, channel_id)
        return request_id

    def future(self, request_id: str) -> asyncio.Future[PermissionDecision] | None:
        return self._pending.get(request_id)

    async def wait(self, request_id: str) -> PermissionDecision:
        async with self._lock:
            fut = self._pending.get(request_id)
        if fut is None:
            return Deny(message=denial_message("", None))
        return await asyncio.shield(fut)

    def get(self, request_id: str) -> PermissionRequest | None:
        return self._records.get(request_id)

    def pending_for_channel(self, channel_id: str) -> list[PermissionRequest]:
        return [r for r in self._records.values() if r.channel_id == channel_id]

    def __len__(self) -> int:
        return len(self._records)

    async def mark_sent(self, request_id: str) -> None:
        await self._set_status(request_id, "sent", from_states=("pending",))

    async def request_comment(self, request_id: str) -> bool:
        """Move to awaiting_comment without resolving the future."""
        return await self._set_status(request_id, "awaiting_comment", from_states=("pending", "sent"))

    async def _set_status(
        self,
        request_id: str,
        status: RequestStatus,
        *,
        from_states: tuple[str, ...],
    ) -> bool:
        async with self._lock:
            rec = self._records.get(request_id)
            if rec is None or rec.status not in from_states:
                return False
            rec.status = status
            rec.updated_at = time.time()
        if self._db is not None:
            self._db.update_permission_request(request_id, status=status)
        return True

    def awaiting_comment(self, channel_id: str) -> PermissionRequest | None:
        for rec in self._records.values():
            if rec.channel_id == channel_id and rec.status == "awaiting_comment":
                return rec
        return None

    async def resolve_comment(self, channel_id: str, text: str) -> bool:
        """Deny the channel's awaiting_comment request with ``text`` as the reason."""
        rec = self.awaiting_comment(channel_id)
        if rec is None:
            return False
        return await self.resolve(rec.request_id, approved=False, message=text)

    async def resolve(
        self,
        request_id: str,
        *,
        approved: bool,
        message: str | None = None,
        interrupt: bool = False,
    ) -> bool:
        """Fire the request's future once and drop the record.

        Returns False (and logs) when the request is unknown or already resolved.
        """
        async with self._lock:
            rec = self._records.pop(request_id, None)
            fut = self._pending.pop(request_id, None)
        if rec is None or fut is None:
            logger.warning("permission request {} already resolved or unknown", request_id)
            return False

        if approved:
            decision: PermissionDecision = Allow(updated_input=decode_tool_input(rec.tool_input))
        else:
            decision = Deny(message=denial_message(rec.tool_name, message), interrupt=interrupt)

        status: RequestStatus = "approved" if approved else "denied"
        if self._db is not None:
            self._db.update_permission_request(request_id, status=status, response=message)
        if not fut.done():
            fut.set_result(decision)
        logger.info("permission request {} {}", request_id, status)
        return True

    async def force_resolve_all(self, reason: str, *, channel_id: str | None = None) -> int:
        """Deny every outstanding request (optionally only one channel's)."""
        async with self._lock:
            ids = [
                rid
                for rid, rec in self._records.items()
                if channel_id is None or rec.channel_id == channel_id
            ]
            drained = [(rid, self._records.pop(rid), self._pending.pop(rid, None)) for rid in ids]

        for rid, _rec, fut in drained:
            if self._db is not None:
                self._db.update_permission_request(rid, status="denied", response=reason)
            if fut is not None and not fut.done():
                fut.set_result(Deny(message=reason))
        if drained:
            logger.info("force-denied {} permission request(s): {}", len(drained), reason)
        return len(drained)
