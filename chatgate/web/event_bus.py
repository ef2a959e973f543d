"""Channel event bus: stores every ChannelEvent, then wakes SSE readers.

Readers track the last event id they sent. ``wait_after(last_id)`` returns at
once when something newer was already stored, so an event published between a
replay and the next wait is never missed.
"""

from __future__ import annotations

import asyncio
from typing import Any

from chatgate.protocol import ChannelEvent
from chatgate.web.database import Database


class ChannelEventBus:
    def __init__(self, db: Database):
        self._db = db
        self._cond = asyncio.Condition()
        self._latest_id = 0

    @property
    def latest_id(self) -> int:
        return self._latest_id

    async def publish(self, event: ChannelEvent) -> dict[str, Any]:
        stored = self._db.insert_event(event.channel_id, event.type, float(event.ts), event.payload)
        async with self._cond:
            self._latest_id = max(self._latest_id, int(stored["id"]))
            self._cond.notify_all()
        return stored

    async def wait_after(self, last_id: int | None, timeout_s: float) -> bool:
        """True once an event newer than ``last_id`` exists, False on timeout."""
        after = last_id or 0
        try:
            async with self._cond:
                await asyncio.wait_for(self._cond.wait_for(lambda: self._latest_id > after), timeout=timeout_s)
            return True
        except asyncio.TimeoutError:
            return False

    def replay(self, *, channel_id: str | None, since_id: int | None, limit: int = 2000) -> list[dict[str, Any]]:
        return self._db.get_events(channel_id=channel_id, since_id=since_id, limit=limit)
