"""Tests for the EventBus: delivery, wildcard subscribers, error isolation, draining."""

from __future__ import annotations

import asyncio

import pytest

from kiln.events import ALL_EVENTS, TOOL_FINISHED, TURN_APPENDED, Event, EventBus


def _make_event(
    event_type: str = "test_event",
    session_id: str = "sess-1",
    data: dict | None = None,
) -> Event:
    return Event(type=event_type, session_id=session_id, data=data or {})


class TestEventBus:
    """Core event bus tests using a real EventBus."""

    @pytest.mark.asyncio
    async def test_emit_handler_receives_event(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on(TURN_APPENDED, handler)
        await bus.start()
        try:
            await bus.emit(_make_event(TURN_APPENDED, data={"kind": "user"}))
            # Give bus time to process
            await asyncio.sleep(0.1)
            assert len(received) == 1
            assert received[0].session_id == "sess-1"
            assert received[0].data == {"kind": "user"}
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_multiple_handlers_same_event(self):
        bus = EventBus()
        results: list[str] = []

        async def handler_a(event: Event) -> None:
            results.append("a")

        async def handler_b(event: Event) -> None:
            results.append("b")

        bus.on("test_event", handler_a)
        bus.on("test_event", handler_b)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert sorted(results) == ["a", "b"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_wildcard_receives_every_type(self):
        bus = EventBus()
        seen: list[str] = []

        async def everything(event: Event) -> None:
            seen.append(event.type)

        bus.on(ALL_EVENTS, everything)
        await bus.emit(_make_event(TURN_APPENDED))
        await bus.emit(_make_event(TOOL_FINISHED))
        await bus.start()
        await bus.stop()

        assert seen == [TURN_APPENDED, TOOL_FINISHED]

    @pytest.mark.asyncio
    async def test_handler_error_doesnt_crash_bus(self):
        bus = EventBus()
        received: list[Event] = []

        async def bad_handler(event: Event) -> None:
            raise ValueError("boom")

        async def good_handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", bad_handler)
        bus.on("other_event", good_handler)
        await bus.start()
        try:
            await bus.emit(_make_event("test_event"))
            await asyncio.sleep(0.1)
            # Bus still running
            await bus.emit(_make_event("other_event"))
            await asyncio.sleep(0.1)
            assert len(received) == 1
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_handler_error_doesnt_block_other_handlers(self):
        bus = EventBus()
        results: list[str] = []

        async def bad_handler(event: Event) -> None:
            raise RuntimeError("fail")

        async def good_handler(event: Event) -> None:
            results.append("ok")

        bus.on("test_event", bad_handler)
        bus.on("test_event", good_handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert results == ["ok"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_queue_full_drops_event(self):
        bus = EventBus(max_queue=1)
        # Not started, so nothing is consumed
        await bus.emit(_make_event("first"))
        assert bus.pending == 1
        await bus.emit(_make_event("second"))
        assert bus.pending == 1

    @pytest.mark.asyncio
    async def test_stop_drains_remaining_events(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        await bus.emit(_make_event(data={"n": 1}))
        await bus.emit(_make_event(data={"n": 2}))
        assert bus.pending == 2

        await bus.start()
        await bus.stop()

        assert bus.pending == 0
        assert [e.data["n"] for e in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_unknown_event_type_no_error(self):
        bus = EventBus()
        await bus.start()
        try:
            await bus.emit(_make_event("nobody_listens"))
            await asyncio.sleep(0.1)
            assert bus.pending == 0
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        bus = EventBus()
        await bus.start()
        task = bus._task
        await bus.start()
        assert bus._task is task
        await bus.stop()
