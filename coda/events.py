"""In-process async notification bus for turn lifecycle events.

The turn engine publishes discrete notifications (turn completion, tool
executions, compression, context snapshots) here.  Persistence and
telemetry subscribers consume them from a background task, so a slow
subscriber never holds up a turn.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]

# Notification names published by the engine
TURN_STARTED = "turn_started"
TURN_COMPLETED = "turn_completed"
TOOL_EXECUTED = "tool_executed"
MEMORY_COMPRESSED = "memory_compressed"
CONTEXT_SNAPSHOT = "context_snapshot"


@dataclass
class Event:
    """A named notification with a JSON-friendly payload."""

    type: str
    conversation_id: str
    data: dict[str, Any] = field(default_factory=dict)
    turn_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Queue-backed notification bus with per-handler error isolation.

    publish() never blocks: events go onto a bounded queue that a
    background task drains.  Handlers registered with on() run
    concurrently per event.  A catch-all sink (set_sink) sees every
    event before the typed handlers, which is where a persistence
    layer plugs in.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False
        self._sink: EventHandler | None = None

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for one notification name."""
        self._handlers[event_type].append(handler)
        logger.debug(
            "Registered handler for '%s': %s", event_type, getattr(handler, "__qualname__", repr(handler))
        )

    def set_sink(self, sink: EventHandler) -> None:
        """Set the catch-all subscriber (persistence/telemetry)."""
        self._sink = sink

    def publish(self, event: Event) -> None:
        """Queue an event. Drops it with a warning when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.type)

    async def start(self) -> None:
        """Start the background dispatch loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="coda-event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the loop, then dispatch whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._queue.empty():
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)
        logger.info("Event bus stopped")

    async def _process_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        if self._sink:
            await self._safe_handle(self._sink, event)

        handlers = self._handlers.get(event.type, [])
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run one handler; only cancellation propagates."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed for event %s",
                getattr(handler, "__qualname__", repr(handler)),
                event.type,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting in the queue."""
        return self._queue.qsize()
