"""Tests for the EventBus -- non-blocking publish, dispatch, isolation."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from coda.events import TOOL_EXECUTED, TURN_COMPLETED, Event, EventBus


def _make_event(event_type: str = TURN_COMPLETED, data: dict | None = None) -> Event:
    return Event(type=event_type, conversation_id="conv-1", data=data or {}, turn_id="turn-1")


class TestEventBus:
    def test_publish_does_not_need_running_loop_task(self):
        bus = EventBus()
        bus.publish(_make_event())
        assert bus.pending == 1

    def test_full_queue_drops_with_warning(self, caplog):
        bus = EventBus(max_queue=2)
        with caplog.at_level(logging.WARNING, logger="coda.events"):
            for _ in range(3):
                bus.publish(_make_event())
        assert bus.pending == 2
        assert "dropping event" in caplog.text

    @pytest.mark.asyncio
    async def test_handlers_receive_matching_events(self):
        bus = EventBus()
        completed = AsyncMock()
        tools = AsyncMock()
        bus.on(TURN_COMPLETED, completed)
        bus.on(TOOL_EXECUTED, tools)

        await bus.start()
        bus.publish(_make_event(TURN_COMPLETED, {"status": "completed"}))
        await asyncio.sleep(0.05)
        await bus.stop()

        completed.assert_awaited_once()
        assert completed.await_args.args[0].data == {"status": "completed"}
        tools.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = EventBus()
        broken = AsyncMock(side_effect=RuntimeError("handler bug"))
        healthy = AsyncMock()
        bus.on(TURN_COMPLETED, broken)
        bus.on(TURN_COMPLETED, healthy)

        await bus.start()
        bus.publish(_make_event())
        bus.publish(_make_event())
        await asyncio.sleep(0.05)
        await bus.stop()

        assert broken.await_count == 2
        assert healthy.await_count == 2

    @pytest.mark.asyncio
    async def test_sink_sees_every_event_first(self):
        bus = EventBus()
        order: list[str] = []

        async def sink(event: Event) -> None:
            order.append(f"sink:{event.type}")

        async def handler(event: Event) -> None:
            order.append(f"handler:{event.type}")

        bus.set_sink(sink)
        bus.on(TOOL_EXECUTED, handler)
        bus.publish(_make_event(TOOL_EXECUTED))
        bus.publish(_make_event(TURN_COMPLETED))
        await bus.stop()

        assert order == [
            f"sink:{TOOL_EXECUTED}",
            f"handler:{TOOL_EXECUTED}",
            f"sink:{TURN_COMPLETED}",
        ]

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self):
        bus = EventBus()
        handler = AsyncMock()
        bus.on(TURN_COMPLETED, handler)
        for _ in range(5):
            bus.publish(_make_event())

        await bus.stop()

        assert handler.await_count == 5
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_slow_handler_does_not_block_publish(self):
        bus = EventBus()
        release = asyncio.Event()

        async def slow(event: Event) -> None:
            await release.wait()

        bus.on(TURN_COMPLETED, slow)
        await bus.start()
        bus.publish(_make_event())
        await asyncio.sleep(0.01)
        # The loop is stuck in the slow handler; publishing still returns at once
        bus.publish(_make_event())
        assert bus.pending == 1

        release.set()
        await bus.stop()
