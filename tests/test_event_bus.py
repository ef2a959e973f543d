import asyncio

from chatgate.protocol import evt_notice
from chatgate.web.database import Database
from chatgate.web.event_bus import ChannelEventBus


def test_publish_stores_and_replays_per_channel(tmp_path) -> None:
    async def scenario() -> None:
        bus = ChannelEventBus(Database(tmp_path / "chatgate.db"))
        first = await bus.publish(evt_notice("c1", "one"))
        await bus.publish(evt_notice("c2", "other"))
        third = await bus.publish(evt_notice("c1", "two", "warning"))

        assert bus.latest_id == third["id"]
        replayed = bus.replay(channel_id="c1", since_id=None)
        assert [e["payload"]["text"] for e in replayed] == ["one", "two"]
        assert [e["seq"] for e in replayed] == [1, 2]
        assert bus.replay(channel_id="c1", since_id=first["id"])[0]["payload"]["level"] == "warning"

    asyncio.run(scenario())


def test_wait_after_sees_events_stored_before_the_wait(tmp_path) -> None:
    async def scenario() -> None:
        bus = ChannelEventBus(Database(tmp_path / "chatgate.db"))
        assert await bus.wait_after(None, timeout_s=0.01) is False

        stored = await bus.publish(evt_notice("c1", "early"))
        assert await bus.wait_after(0, timeout_s=0.01) is True
        assert await bus.wait_after(stored["id"], timeout_s=0.01) is False

        waiter = asyncio.create_task(bus.wait_after(stored["id"], timeout_s=5.0))
        await asyncio.sleep(0)
        await bus.publish(evt_notice("c1", "late"))
        assert await waiter is True

    asyncio.run(scenario())
