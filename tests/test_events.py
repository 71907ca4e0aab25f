"""Tests for the lifecycle event bus."""

from flowchat.core.events import EventBus, EventType


class TestEventBus:
    async def test_type_wildcard_and_instance_subscriptions(self):
        bus = EventBus()
        by_type, everything, by_instance = [], [], []
        bus.subscribe(EventType.COMPLETED, by_type.append)
        bus.subscribe("*", everything.append)
        bus.subscribe("instance:sales", by_instance.append)

        await bus.emit(EventType.MESSAGE_SENT, "sales", "s1", message="hi")
        await bus.emit(EventType.COMPLETED, "support", "s2", text="done")

        assert [e.type for e in by_type] == [EventType.COMPLETED]
        assert [e.type for e in everything] == [EventType.MESSAGE_SENT, EventType.COMPLETED]
        assert [e.data for e in by_instance] == [{"message": "hi"}]

    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(EventType.ERROR, seen.append)
        unsubscribe()
        unsubscribe()
        await bus.emit(EventType.ERROR, "x")
        assert seen == []

    async def test_async_listener_is_awaited(self):
        bus = EventBus()
        seen = []

        async def listener(event):
            seen.append(event.session_id)

        bus.subscribe(EventType.SESSION_STARTED, listener)
        await bus.emit(EventType.SESSION_STARTED, "x", "s9")
        assert seen == ["s9"]

    async def test_failing_listener_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.subscribe(EventType.PARTIAL_UPDATE, broken)
        bus.subscribe(EventType.PARTIAL_UPDATE, seen.append)
        await bus.emit(EventType.PARTIAL_UPDATE, "x", text="He")
        assert len(seen) == 1

    async def test_history(self):
        bus = EventBus(history_size=2)
        for event_type in (EventType.MESSAGE_SENT, EventType.PARTIAL_UPDATE, EventType.COMPLETED):
            await bus.emit(event_type, "x")
        assert [e.type for e in bus.history()] == [EventType.PARTIAL_UPDATE, EventType.COMPLETED]
        assert [e.type for e in bus.history(EventType.COMPLETED)] == [EventType.COMPLETED]
