"""
Tests for the engine event bus.
"""

import asyncio

import pytest

from offline_sync.utils.notifications import EventBus, EventCategory, EventPriority


@pytest.fixture
def bus():
    return EventBus(max_history=5)


class TestEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers_receive_events(self, bus):
        seen = []

        async def async_handler(event):
            seen.append(("async", event.name))

        bus.subscribe(lambda event: seen.append(("sync", event.name)))
        bus.subscribe(async_handler)

        await bus.emit("reconnected", EventCategory.CONNECTIVITY, {})

        assert sorted(seen) == [("async", "reconnected"), ("sync", "reconnected")]

    @pytest.mark.asyncio
    async def test_filters(self, bus):
        by_category, by_name, by_priority = [], [], []
        bus.subscribe(by_category.append, categories=EventCategory.SYNC)
        bus.subscribe(by_name.append, event_names="sync_warning")
        bus.subscribe(by_priority.append, priority_min=EventPriority.HIGH)

        await bus.emit("sync_completed", EventCategory.SYNC, {})
        await bus.emit("sync_warning", EventCategory.SYNC, {}, priority=EventPriority.HIGH)
        await bus.emit("draft_saved", EventCategory.DRAFTS, {})

        assert [e.name for e in by_category] == ["sync_completed", "sync_warning"]
        assert [e.name for e in by_name] == ["sync_warning"]
        assert [e.name for e in by_priority] == ["sync_warning"]

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_reach_emitter(self, bus):
        seen = []

        def broken(event):
            raise RuntimeError("display crashed")

        async def broken_async(event):
            raise RuntimeError("async display crashed")

        bus.subscribe(broken)
        bus.subscribe(broken_async)
        bus.subscribe(seen.append)

        await bus.emit("offline", EventCategory.CONNECTIVITY, {})
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        seen = []
        subscription = bus.subscribe(seen.append)

        assert bus.unsubscribe(subscription) is True
        assert bus.unsubscribe(subscription) is False

        await bus.emit("offline", EventCategory.CONNECTIVITY, {})
        assert seen == []

    @pytest.mark.asyncio
    async def test_history_is_bounded_and_filterable(self, bus):
        for i in range(7):
            await bus.emit(f"event_{i}", EventCategory.SYNC, {"i": i})
        await bus.emit("draft_saved", EventCategory.DRAFTS, {})

        history = bus.get_history()
        assert len(history) == 5
        assert history[-1].name == "draft_saved"
        assert [e.name for e in bus.get_history(category=EventCategory.DRAFTS)] == ["draft_saved"]
        assert len(bus.get_history(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_wait_for(self, bus):
        waiter = asyncio.ensure_future(bus.wait_for("sync_completed", timeout=1))
        await asyncio.sleep(0)
        await bus.emit("sync_completed", EventCategory.SYNC, {"acknowledged": 3})

        event = await waiter
        assert event.data == {"acknowledged": 3}

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self, bus):
        assert await bus.wait_for("never", timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_event_to_dict(self, bus):
        event = await bus.emit("sync_warning", EventCategory.SYNC, {"pending": 1}, source="scheduler")

        data = event.to_dict()
        assert data["category"] == "sync"
        assert data["source"] == "scheduler"
        assert data["priority"] == EventPriority.NORMAL.value

    @pytest.mark.asyncio
    async def test_buses_are_independent(self):
        first, second = EventBus(), EventBus()
        seen = []
        first.subscribe(seen.append)

        await second.emit("offline", EventCategory.CONNECTIVITY, {})
        assert seen == []
