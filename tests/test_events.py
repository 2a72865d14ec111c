"""Tests for the event bus"""
import asyncio

import pytest

from loopwork.gateway.events import Event, EventBus, EventTypes


def test_broadcast_reaches_sync_handler():
    bus = EventBus()
    seen = []
    bus.on(EventTypes.TOAST, seen.append)

    bus.broadcast("error", "[Loop] boom")

    assert seen[0].data == {"kind": "error", "message": "[Loop] boom"}


def test_off_unsubscribes():
    bus = EventBus()
    seen = []
    bus.on(EventTypes.THREADS_CHANGED, seen.append)
    bus.off(EventTypes.THREADS_CHANGED, seen.append)
    bus.off(EventTypes.THREADS_CHANGED, seen.append)

    bus.threads_changed("t1")

    assert seen == []
    assert bus.get_history(EventTypes.THREADS_CHANGED)[0].data == {"thread_id": "t1"}


def test_handler_errors_do_not_propagate():
    bus = EventBus()

    def broken(event):
        raise ValueError("bad handler")

    bus.on(EventTypes.TOAST, broken)
    bus.broadcast("info", "still delivered")
    assert len(bus.get_history()) == 1


def test_history_is_bounded():
    bus = EventBus(max_history=3)
    for i in range(5):
        bus.publish(Event(type="tick", data={"i": i}))
    assert [e.data["i"] for e in bus.get_history()] == [2, 3, 4]
    assert [e.data["i"] for e in bus.get_history(limit=1)] == [4]
    bus.clear_history()
    assert bus.get_history() == []


@pytest.mark.asyncio
async def test_async_handlers():
    bus = EventBus()
    seen = asyncio.Queue()

    async def handler(event):
        await seen.put(event.type)

    bus.on(EventTypes.SYSTEM_STARTUP, handler)
    bus.on(EventTypes.TOAST, handler)

    await bus.emit(Event(type=EventTypes.SYSTEM_STARTUP, data={}))
    bus.broadcast("info", "scheduled on the loop")

    assert await asyncio.wait_for(seen.get(), 1) == EventTypes.SYSTEM_STARTUP
    assert await asyncio.wait_for(seen.get(), 1) == EventTypes.TOAST


@pytest.mark.asyncio
async def test_failing_async_handler_is_logged(caplog):
    bus = EventBus()

    async def broken(event):
        raise RuntimeError("boom")

    bus.on(EventTypes.TOAST, broken)
    bus.broadcast("error", "x")
    await bus.drain()

    assert not bus._pending
    assert "Handler for 'toast' failed: boom" in caplog.text
