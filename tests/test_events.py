"""
Tests for the event bus (parkstay_bot/common/events.py)
"""
import asyncio

import pytest

from parkstay_bot.common.events import (
    EventBus,
    EventType,
    QueueStatusEvent,
    STQSuccessEvent,
)


def stq_event():
    return STQSuccessEvent(stq_id=1, old_reference="PS0001", new_reference="NEW123")


class TestEventBus:
    def test_publish_to_matching_subscribers(self):
        bus = EventBus()
        received, other = [], []
        bus.subscribe(EventType.STQ_SUCCESS, received.append)
        bus.subscribe(EventType.WATCH_FOUND, other.append)

        bus.publish(stq_event())

        assert [e.new_reference for e in received] == ["NEW123"]
        assert other == []

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(EventType.STQ_SUCCESS, received.append)

        unsubscribe()
        bus.publish(stq_event())

        assert received == []
        assert bus.subscriber_count(EventType.STQ_SUCCESS) == 0

    def test_failing_handler_isolated(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.QUEUE_STATUS_UPDATE, broken)
        bus.subscribe(EventType.QUEUE_STATUS_UPDATE, received.append)

        bus.publish(QueueStatusEvent(position=3))

        assert received[0].position == 3

    @pytest.mark.asyncio
    async def test_async_handler_awaited_on_close(self):
        bus = EventBus()
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event)

        bus.subscribe(EventType.STQ_SUCCESS, handler)
        bus.publish(stq_event())
        await bus.close()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_closed_bus_drops_events(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.STQ_SUCCESS, received.append)

        await bus.close()
        bus.publish(stq_event())

        assert received == []
