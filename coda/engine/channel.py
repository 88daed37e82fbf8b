"""Per-turn typed event channel.

Each turn gets its own channel with a fixed vocabulary:

    content      text delta from the model
    thinking     reasoning delta from the model
    tool_call    the model asked for a tool (input complete)
    tool_result  a tool finished and its result was recorded
    complete     turn reached COMPLETE or CANCELLED (carries the outcome)
    error        turn reached ERROR (carries the outcome)

Subscribers are queues, so emitting never waits on a slow consumer.
The channel closes when the turn ends and every subscription then stops.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from coda.engine.models import ToolCall, ToolResult, TurnOutcome

logger = logging.getLogger(__name__)


class TurnEventType(StrEnum):
    CONTENT = "content"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class TurnEvent:
    type: TurnEventType
    turn_id: str
    text: str = ""
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    outcome: TurnOutcome | None = None


_CLOSED = object()


class TurnEventSubscription:
    """Async iterator over one turn's events. Ends when the channel closes."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    def _push(self, item: object) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def close(self) -> None:
        if not self._closed:
            self._queue.put_nowait(_CLOSED)
            self._closed = True

    def __aiter__(self) -> TurnEventSubscription:
        return self

    async def __anext__(self) -> TurnEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class TurnEventChannel:
    """Fan-out of TurnEvents to queue subscribers and plain callbacks."""

    def __init__(self, turn_id: str) -> None:
        self.turn_id = turn_id
        self._subscriptions: list[TurnEventSubscription] = []
        self._callbacks: list[Callable[[TurnEvent], None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, subscription: TurnEventSubscription) -> None:
        if self._closed:
            subscription.close()
            return
        self._subscriptions.append(subscription)

    def subscribe(self) -> TurnEventSubscription:
        subscription = TurnEventSubscription()
        self.attach(subscription)
        return subscription

    def add_callback(self, callback: Callable[[TurnEvent], None]) -> None:
        self._callbacks.append(callback)

    def emit(self, event_type: TurnEventType, **fields) -> TurnEvent:
        event = TurnEvent(type=event_type, turn_id=self.turn_id, **fields)
        if self._closed:
            logger.debug("Dropping %s event on closed channel %s", event_type, self.turn_id)
            return event
        for subscription in self._subscriptions:
            subscription._push(event)
        for callback in self._callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Turn event callback failed for %s", event_type)
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.close()
