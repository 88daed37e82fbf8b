"""Turn engine -- drives one user query to a terminal state.

A turn moves through an explicit state machine:

    IDLE -> THINKING -> RESPONDING <-> TOOL_EXECUTING -> COMPLETE
                  \\________ ERROR / CANCELLED ________/

Each provider call is streamed, assembled by a StreamProcessor and wrapped
in the retry policy.  Tool calls run through the ToolCoordinator, and each
finished tool is written into the conversation straight away.  Every turn
ends with exactly one TurnOutcome and the machine back in IDLE.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from coda.config import Settings
from coda.engine.cancellation import CancellationToken
from coda.engine.channel import TurnEvent, TurnEventChannel, TurnEventSubscription, TurnEventType
from coda.engine.compression import CompressionOptions, MemoryCompressor, serialize_content
from coda.engine.errors import (
    CancellationError,
    InvalidTransitionError,
    MalformedResponseError,
    ProviderError,
    TurnInProgressError,
    TurnTimeoutError,
)
from coda.engine.models import (
    Conversation,
    Message,
    ProviderResponse,
    TokenUsage,
    ToolCall,
    ToolResult,
    ToolUseBlock,
    TurnOutcome,
    TurnRequest,
    TurnStatus,
)
from coda.engine.provider import ModelProvider
from coda.engine.retry import RetryPolicy
from coda.engine.streaming import ResponseEventType, StreamProcessor
from coda.engine.tools import ToolCoordinator, ToolRegistry
from coda.events import (
    MEMORY_COMPRESSED,
    TOOL_EXECUTED,
    TURN_COMPLETED,
    TURN_STARTED,
    Event,
    EventBus,
)

if TYPE_CHECKING:
    from coda.context.snapshot import ContextSnapshotBridge

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# State machine
# ------------------------------------------------------------------


class TurnState(StrEnum):
    IDLE = "idle"
    THINKING = "thinking"
    RESPONDING = "responding"
    TOOL_EXECUTING = "tool_executing"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TurnState.COMPLETE, TurnState.ERROR, TurnState.CANCELLED})

_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.THINKING, TurnState.CANCELLED}),
    TurnState.THINKING: frozenset({TurnState.RESPONDING, TurnState.ERROR, TurnState.CANCELLED}),
    TurnState.RESPONDING: frozenset(
        {TurnState.TOOL_EXECUTING, TurnState.COMPLETE, TurnState.ERROR, TurnState.CANCELLED}
    ),
    TurnState.TOOL_EXECUTING: frozenset(
        {TurnState.RESPONDING, TurnState.ERROR, TurnState.CANCELLED}
    ),
    TurnState.COMPLETE: frozenset({TurnState.IDLE}),
    TurnState.ERROR: frozenset({TurnState.IDLE}),
    TurnState.CANCELLED: frozenset({TurnState.IDLE}),
}


class TurnStateMachine:
    """Tracks the current turn state and every state it has passed through."""

    def __init__(self) -> None:
        self._state = TurnState.IDLE
        self.history: list[TurnState] = [TurnState.IDLE]

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def can_transition(self, target: TurnState) -> bool:
        return target in _TRANSITIONS[self._state]

    def transition(self, target: TurnState) -> None:
        if not self.can_transition(target):
            raise InvalidTransitionError(f"Illegal turn transition {self._state} -> {target}")
        logger.debug("Turn state %s -> %s", self._state, target)
        self._state = target
        self.history.append(target)

    def reset(self) -> None:
        """Return to IDLE after a turn ends."""
        if self._state == TurnState.IDLE:
            return
        if not self.terminal:
            logger.warning("Resetting turn state from non-terminal %s", self._state)
            self._state = TurnState.IDLE
            self.history.append(TurnState.IDLE)
            return
        self.transition(TurnState.IDLE)


# ------------------------------------------------------------------
# Options and per-turn scope
# ------------------------------------------------------------------


@dataclass
class TurnOptions:
    """Per-turn overrides. None falls back to Settings."""

    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[str] | None = None  # restrict to these tool names
    cancellation_token: CancellationToken | None = None
    max_tool_iterations: int | None = None
    timeout: float | None = None
    on_event: Callable[[TurnEvent], None] | None = None


@dataclass
class _TurnScope:
    turn_id: str
    conversation: Conversation
    options: TurnOptions
    token: CancellationToken
    channel: TurnEventChannel
    usage: TokenUsage = field(default_factory=TokenUsage)
    results: list[ToolResult] = field(default_factory=list)
    final_text: str = ""
    partial_text: str = ""
    iterations: int = 0


# ------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------


class TurnEngine:
    """Runs turns against one conversation, one turn at a time."""

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRegistry,
        settings: Settings,
        *,
        conversation: Conversation | None = None,
        compressor: MemoryCompressor | None = None,
        context_bridge: ContextSnapshotBridge | None = None,
        bus: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
        coordinator: ToolCoordinator | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._settings = settings
        self.conversation = conversation or Conversation(conversation_id=str(uuid4()))
        self._compressor = compressor or MemoryCompressor(provider, settings)
        self._context_bridge = context_bridge
        self._bus = bus
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._coordinator = coordinator or ToolCoordinator(registry)
        self._machine = TurnStateMachine()
        self._active: _TurnScope | None = None
        self._pending_subscriptions: list[TurnEventSubscription] = []

    @property
    def state(self) -> TurnState:
        return self._machine.state

    @property
    def state_history(self) -> list[TurnState]:
        return list(self._machine.history)

    @property
    def busy(self) -> bool:
        return self._active is not None

    @property
    def compressor(self) -> MemoryCompressor:
        return self._compressor

    @property
    def coordinator(self) -> ToolCoordinator:
        return self._coordinator

    def subscribe(self) -> TurnEventSubscription:
        """Events of the running turn, or of the next one if idle."""
        subscription = TurnEventSubscription()
        if self._active is not None:
            self._active.channel.attach(subscription)
        else:
            self._pending_subscriptions.append(subscription)
        return subscription

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        """Signal the running turn to stop. Returns False when idle."""
        if self._active is None:
            return False
        logger.info("Cancelling turn %s: %s", self._active.turn_id, reason)
        self._active.token.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def submit_query(
        self,
        query: str | Message | list[Message],
        options: TurnOptions | None = None,
        *,
        conversation: Conversation | None = None,
    ) -> TurnOutcome:
        """Run one turn to completion and return its outcome.

        Provider failures, timeouts and cancellation come back as an
        outcome, not an exception.  Raises TurnInProgressError if a turn
        is already running.
        """
        if self._active is not None:
            raise TurnInProgressError(f"Turn {self._active.turn_id} is still running")

        options = options or TurnOptions()
        conversation = conversation or self.conversation
        turn_id = str(uuid4())
        scope = _TurnScope(
            turn_id=turn_id,
            conversation=conversation,
            options=options,
            token=options.cancellation_token or CancellationToken(),
            channel=TurnEventChannel(turn_id),
        )
        for subscription in self._pending_subscriptions:
            scope.channel.attach(subscription)
        self._pending_subscriptions.clear()
        if options.on_event is not None:
            scope.channel.add_callback(options.on_event)

        self._active = scope
        self._coordinator.begin_turn()
        self._machine.transition(TurnState.THINKING)

        for message in _as_messages(query):
            conversation.append(message)
        self._publish(TURN_STARTED, scope, {"message_count": len(conversation.messages)})
        logger.info("Turn %s started (%d messages)", scope.turn_id, len(conversation.messages))

        timeout = options.timeout if options.timeout is not None else self._settings.turn_timeout
        try:
            outcome = await asyncio.wait_for(self._run_turn(scope), timeout=timeout or None)
        except CancellationError:
            outcome = self._cancelled(scope)
        except asyncio.TimeoutError:
            scope.token.cancel("turn timed out")
            logger.warning("Turn %s timed out after %.1fs", scope.turn_id, timeout)
            outcome = self._failed(scope, TurnTimeoutError(timeout))
        except ProviderError as e:
            logger.warning("Turn %s failed: %s", scope.turn_id, e)
            outcome = self._failed(scope, e)
        except BaseException as e:
            scope.token.cancel("turn aborted")
            target = (
                TurnState.CANCELLED if isinstance(e, asyncio.CancelledError) else TurnState.ERROR
            )
            if self._machine.can_transition(target):
                self._machine.transition(target)
            raise
        finally:
            scope.channel.close()
            self._active = None
            self._machine.reset()
            if self._context_bridge is not None:
                self._context_bridge.schedule_capture("post_turn", scope.turn_id)

        logger.info(
            "Turn %s %s: %d tool call(s), %d iteration(s), %d tokens",
            scope.turn_id,
            outcome.status,
            len(outcome.tool_calls_executed),
            outcome.iterations,
            outcome.token_usage.total,
        )
        return outcome

    async def stream_query(
        self,
        query: str | Message | list[Message],
        options: TurnOptions | None = None,
        *,
        conversation: Conversation | None = None,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run a turn and yield its events. The last event is complete or error."""
        if self._active is not None:
            raise TurnInProgressError(f"Turn {self._active.turn_id} is still running")

        subscription = self.subscribe()
        task = asyncio.create_task(
            self.submit_query(query, options, conversation=conversation), name="coda-turn"
        )
        task.add_done_callback(lambda _: subscription.close())
        try:
            async for event in subscription:
                yield event
        finally:
            if not task.done():
                self.cancel("stream consumer stopped")
            await task

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _run_turn(self, scope: _TurnScope) -> TurnOutcome:
        options = scope.options
        system_prompt = await self._build_system_prompt(scope)
        tools = tuple(self._registry.tool_definitions(options.tools))
        max_iterations = (
            options.max_tool_iterations
            if options.max_tool_iterations is not None
            else self._settings.max_tool_iterations
        )

        while True:
            scope.token.raise_if_cancelled()
            await self._maybe_compress(scope)

            can_loop = scope.iterations < max_iterations
            with_tools = bool(tools) and can_loop
            if tools and not can_loop:
                logger.warning(
                    "Turn %s reached max_tool_iterations=%d, final call without tools",
                    scope.turn_id,
                    max_iterations,
                )

            request = TurnRequest(
                messages=tuple(scope.conversation.messages),
                system_prompt=system_prompt,
                model=options.model or self._settings.model,
                temperature=(
                    options.temperature
                    if options.temperature is not None
                    else self._settings.temperature
                ),
                max_tokens=options.max_tokens or self._settings.max_tokens,
                tools=tools,
                cancellation_token=scope.token,
            )
            response = await self._call_provider(scope, request, with_tools=with_tools)
            scope.usage.add(response.usage)
            self._calibrate(request, response)

            # Requested tools run even when no definitions were sent; unknown
            # names come back as error results.
            tool_calls = response.tool_calls if can_loop else []
            if not tool_calls:
                content = tuple(b for b in response.content if not isinstance(b, ToolUseBlock))
                if content:
                    scope.conversation.append(Message(role="assistant", content=content))
                scope.final_text = response.text
                self._machine.transition(TurnState.COMPLETE)
                return self._completed(scope)

            self._machine.transition(TurnState.TOOL_EXECUTING)
            scope.iterations += 1
            await self._execute_tools(scope, response, tool_calls)

    async def _maybe_compress(self, scope: _TurnScope) -> None:
        conversation = scope.conversation
        threshold = self._settings.compression_threshold
        if not self._compressor.needs_compression(conversation.messages, threshold):
            return

        options = CompressionOptions.from_settings(self._settings)
        result = await scope.token.race(self._compressor.compress(conversation.messages, options))
        if not result.compressed:
            return

        conversation.replace_head(result.messages, result.summary_text)
        self._publish(
            MEMORY_COMPRESSED,
            scope,
            {
                "original_tokens": result.original_token_count,
                "new_tokens": result.new_token_count,
                "ratio": result.ratio,
                "fallback": result.fallback,
                "compression_count": conversation.compression_count,
            },
        )

    async def _call_provider(
        self, scope: _TurnScope, request: TurnRequest, *, with_tools: bool
    ) -> ProviderResponse:
        """One logical provider call with retries around whole attempts."""
        if self._machine.state == TurnState.TOOL_EXECUTING:
            self._machine.transition(TurnState.RESPONDING)

        attempt = 0
        while True:
            scope.token.raise_if_cancelled()
            try:
                return await self._consume(scope, request, with_tools=with_tools)
            except ProviderError as e:
                if not self._retry.should_retry(attempt, e):
                    raise
                delay = self._retry.delay_for(attempt, e)
                logger.warning(
                    "Provider call failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt + 1,
                    self._retry.max_attempts,
                    delay,
                    e,
                )
                await scope.token.race(asyncio.sleep(delay))
                attempt += 1

    async def _consume(
        self, scope: _TurnScope, request: TurnRequest, *, with_tools: bool
    ) -> ProviderResponse:
        messages = [m.to_api() for m in request.messages]
        config = request.generation_config(with_tools=with_tools)
        processor = StreamProcessor(scope.token)
        channel = scope.channel

        async for event in processor.process(self._provider.generate_stream(messages, config)):
            if event.type != ResponseEventType.ERROR and self._machine.state == TurnState.THINKING:
                self._machine.transition(TurnState.RESPONDING)

            if event.type == ResponseEventType.CONTENT_DELTA:
                channel.emit(TurnEventType.CONTENT, text=event.text)
            elif event.type == ResponseEventType.THINKING_DELTA:
                channel.emit(TurnEventType.THINKING, text=event.text)
            elif event.type == ResponseEventType.TOOL_CALL_START:
                channel.emit(TurnEventType.TOOL_CALL, tool_call=event.tool_call)
            elif event.type == ResponseEventType.COMPLETE:
                assert event.response is not None
                return event.response
            elif event.type == ResponseEventType.ERROR:
                if event.cancelled:
                    scope.partial_text = event.partial_text
                    raise CancellationError(event.text)
                if isinstance(event.cause, ProviderError):
                    raise event.cause
                raise ProviderError(event.text, retryable=event.retryable) from event.cause

        raise MalformedResponseError("Provider stream produced no terminal event")

    async def _execute_tools(
        self, scope: _TurnScope, response: ProviderResponse, tool_calls: list[ToolCall]
    ) -> None:
        leading = tuple(b for b in response.content if not isinstance(b, ToolUseBlock))
        recorded = 0

        def record(call: ToolCall, result: ToolResult) -> None:
            nonlocal recorded
            blocks = (*leading, call.to_block()) if recorded == 0 else (call.to_block(),)
            recorded += 1
            scope.conversation.append(Message(role="assistant", content=blocks))
            scope.conversation.append(Message(role="user", content=(result.to_block(),)))
            scope.results.append(result)
            scope.channel.emit(TurnEventType.TOOL_RESULT, tool_call=call, tool_result=result)
            self._publish(
                TOOL_EXECUTED,
                scope,
                {
                    "tool_name": call.name,
                    "tool_call_id": call.id,
                    "is_error": result.is_error,
                    "duration_ms": result.duration_ms,
                },
            )

        allowed = set(scope.options.tools) if scope.options.tools is not None else None
        await self._coordinator.execute(tool_calls, scope.token, record, allowed=allowed)
        scope.token.raise_if_cancelled()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _build_system_prompt(self, scope: _TurnScope) -> str:
        base = scope.options.system_prompt or self._settings.system_prompt
        if self._context_bridge is None:
            return base

        context = await self._context_bridge.load()
        self._context_bridge.schedule_capture("pre_turn", scope.turn_id, preloaded=context)
        section = self._context_bridge.render_system_section(context)
        return f"{base}\n\n{section}" if section else base

    def _calibrate(self, request: TurnRequest, response: ProviderResponse) -> None:
        if response.usage.input_tokens <= 0:
            return
        chars = len(request.system_prompt) + sum(
            len(serialize_content(m)) for m in request.messages
        )
        if request.tools:
            chars += len(json.dumps(list(request.tools)))
        self._compressor.estimator.calibrate(chars, response.usage.input_tokens)

    def _completed(self, scope: _TurnScope) -> TurnOutcome:
        outcome = self._outcome(scope, TurnStatus.COMPLETED)
        scope.channel.emit(TurnEventType.COMPLETE, text=outcome.final_text, outcome=outcome)
        self._publish_completed(scope, outcome)
        return outcome

    def _cancelled(self, scope: _TurnScope) -> TurnOutcome:
        self._machine.transition(TurnState.CANCELLED)
        if self._settings.keep_partial_on_cancel and scope.partial_text:
            scope.conversation.append(Message(role="assistant", content=scope.partial_text))
            scope.final_text = scope.partial_text
        logger.info("Turn %s cancelled: %s", scope.turn_id, scope.token.reason or "cancelled")
        outcome = self._outcome(scope, TurnStatus.CANCELLED)
        scope.channel.emit(TurnEventType.COMPLETE, text=outcome.final_text, outcome=outcome)
        self._publish_completed(scope, outcome)
        return outcome

    def _failed(self, scope: _TurnScope, error: BaseException) -> TurnOutcome:
        self._machine.transition(TurnState.ERROR)
        outcome = self._outcome(scope, TurnStatus.ERROR, error=error)
        scope.channel.emit(TurnEventType.ERROR, text=outcome.error or "", outcome=outcome)
        self._publish_completed(scope, outcome)
        return outcome

    def _outcome(
        self, scope: _TurnScope, status: TurnStatus, error: BaseException | None = None
    ) -> TurnOutcome:
        return TurnOutcome(
            final_text=scope.final_text,
            status=status,
            tool_calls_executed=list(scope.results),
            token_usage=scope.usage,
            error=str(error) if error is not None else None,
            error_cause=error,
            messages=list(scope.conversation.messages),
            iterations=scope.iterations,
        )

    def _publish_completed(self, scope: _TurnScope, outcome: TurnOutcome) -> None:
        self._publish(
            TURN_COMPLETED,
            scope,
            {
                "status": str(outcome.status),
                "tool_calls": len(outcome.tool_calls_executed),
                "iterations": outcome.iterations,
                "input_tokens": outcome.token_usage.input_tokens,
                "output_tokens": outcome.token_usage.output_tokens,
                "error": outcome.error,
            },
        )

    def _publish(self, event_type: str, scope: _TurnScope, data: dict[str, Any]) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            Event(
                type=event_type,
                conversation_id=scope.conversation.conversation_id,
                turn_id=scope.turn_id,
                data=data,
            )
        )


def _as_messages(query: str | Message | list[Message]) -> list[Message]:
    if isinstance(query, str):
        return [Message(role="user", content=query)]
    if isinstance(query, Message):
        return [query]
    return list(query)
