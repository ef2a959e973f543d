"""Ask broker: multiple-choice questions the engine puts to the operator.

Same single-resolution shape as the permission broker, with three differences:
a "Custom answer..." option is always appended, the prompt is displayed
through a registered callback before the caller starts waiting, and the wait
is bounded (unanswered questions fail with ``RequestExpired``).
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from loguru import logger

from chatgate.errors import RequestExpired

CUSTOM_ANSWER = "Custom answer..."

AskStatus = Literal["pending", "sent", "answered"]
DisplayFn = Callable[["AskRequest"], Awaitable[None]]


@dataclass
class AskRequest:
    request_id: str
    channel_id: str
    question: str
    options: list[str]
    status: AskStatus = "pending"
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "channel_id": self.channel_id,
            "question": self.question,
            "options": list(self.options),
            "status": self.status,
            "created_at": self.created_at,
        }


class AskBroker:
    def __init__(self, *, timeout_s: float = 300.0, display: DisplayFn | None = None):
        self.timeout_s = timeout_s
        self._display = display
        self._records: dict[str, AskRequest] = {}
        self._pending: dict[str, asyncio.Future[str]] = {}
        # channel_id -> request_id waiting for a free-text answer
        self._custom_input: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def set_display(self, display: DisplayFn | None) -> None:
        self._display = display

    def get(self, request_id: str) -> AskRequest | None:
        return self._records.get(request_id)

    def __len__(self) -> int:
        return len(self._records)

    async def ask(self, *, channel_id: str, question: str, options: list[str]) -> str:
        """Show the question and suspend until answered or timed out."""
        request_id = f"ask_{secrets.token_urlsafe(12)}"
        choices = [o for o in options if o != CUSTOM_ANSWER] + [CUSTOM_ANSWER]
        rec = AskRequest(request_id=request_id, channel_id=channel_id, question=question, options=choices)
        fut: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        async with self._lock:
            self._records[request_id] = rec
            self._pending[request_id] = fut

        if self._display is None:
            await self._discard(request_id)
            raise RequestExpired(request_id, "question", "no display registered")
        try:
            await self._display(rec)
        except Exception as e:
            await self._discard(request_id)
            logger.warning("failed to display question {}: {}", request_id, e)
            raise RequestExpired(request_id, "question", f"display failed: {e}") from e

        async with self._lock:
            if rec.status == "pending":
                rec.status = "sent"

        try:
            return await asyncio.wait_for(asyncio.shield(fut), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            await self._discard(request_id)
            logger.warning("question {} timed out after {}s", request_id, self.timeout_s)
            raise RequestExpired(request_id, "question", f"no answer within {int(self.timeout_s)}s") from None

    async def _discard(self, request_id: str) -> None:
        async with self._lock:
            rec = self._records.pop(request_id, None)
            self._pending.pop(request_id, None)
            if rec is not None and self._custom_input.get(rec.channel_id) == request_id:
                self._custom_input.pop(rec.channel_id, None)

    async def answer(self, request_id: str, choice: int | str) -> bool:
        """Answer by option index or by label. Picking the custom option enters free-text mode."""
        rec = self._records.get(request_id)
        if rec is None:
            logger.warning("question {} already answered or unknown", request_id)
            return False
        if isinstance(choice, int):
            if choice < 0 or choice >= len(rec.options):
                logger.warning("question {}: option index {} out of range", request_id, choice)
                return False
            label = rec.options[choice]
        else:
            label = choice
        if label == CUSTOM_ANSWER:
            return await self.select_custom(request_id)
        return await self._fire(request_id, label)

    async def select_custom(self, request_id: str) -> bool:
        async with self._lock:
            rec = self._records.get(request_id)
            if rec is None:
                return False
            self._custom_input[rec.channel_id] = request_id
        return True

    def awaiting_custom(self, channel_id: str) -> str | None:
        return self._custom_input.get(channel_id)

    async def answer_custom_text(self, channel_id: str, text: str) -> bool:
        """Resolve the channel's free-text question with ``text``."""
        async with self._lock:
            request_id = self._custom_input.pop(channel_id, None)
        if request_id is None:
            return False
        return await self._fire(request_id, text)

    async def _fire(self, request_id: str, value: str) -> bool:
        async with self._lock:
            rec = self._records.pop(request_id, None)
            fut = self._pending.pop(request_id, None)
            if rec is not None and self._custom_input.get(rec.channel_id) == request_id:
                self._custom_input.pop(rec.channel_id, None)
        if rec is None or fut is None:
            logger.warning("question {} already answered or unknown", request_id)
            return False
        rec.status = "answered"
        if not fut.done():
            fut.set_result(value)
        return True

    async def force_resolve_all(self, reason: str, *, channel_id: str | None = None) -> int:
        async with self._lock:
            ids = [
                rid
                for rid, rec in self._records.items()
                if channel_id is None or rec.channel_id == channel_id
            ]
            drained = [(rid, self._records.pop(rid), self._pending.pop(rid, None)) for rid in ids]
            for _rid, rec, _fut in drained:
                if self._custom_input.get(rec.channel_id) == rec.request_id:
                    self._custom_input.pop(rec.channel_id, None)
        for rid, _rec, fut in drained:
            if fut is not None and not fut.done():
                fut.set_exception(RequestExpired(rid, "question", reason))
        return len(drained)
