"""Streaming event processor.

Turns the provider's raw Anthropic SSE event dicts into an ordered
sequence of ResponseEvents: content/thinking deltas, tool-call starts and
exactly one terminal event (complete or error).  There is no retry logic
here; a failed stream is reported and the turn engine decides.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from coda.engine.cancellation import CancellationToken
from coda.engine.errors import CancellationError, MalformedResponseError, ProviderError
from coda.engine.models import (
    ContentBlock,
    ProviderResponse,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolCall,
    ToolUseBlock,
)
from coda.engine.retry import is_retryable

logger = logging.getLogger(__name__)

# In-stream error types that are worth another attempt
_RETRYABLE_STREAM_ERRORS = frozenset({"overloaded_error", "api_error", "rate_limit_error"})


@dataclass
class StreamEvent:
    """A single parsed event from the SSE stream."""

    type: str  # text_delta, thinking_delta, signature_delta, tool_start, tool_input_delta,
    # block_start, block_stop, message_start, done, message_stop, error
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    block_type: str = ""
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, Any] = field(default_factory=dict)


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse one Anthropic SSE payload into a StreamEvent.

    Pings and unknown types return None.  stop_reason lives in
    message_delta.delta, not message_start.  In-stream errors arrive with
    HTTP 200 and an error body.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            block_type=error.get("type", "unknown"),
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        return StreamEvent(
            type="message_start",
            usage=data.get("message", {}).get("usage") or {},
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return StreamEvent(
            type="block_start",
            block_type=block.get("type", "text"),
            text=block.get("text", "") or block.get("thinking", ""),
            block_index=block_index,
        )

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta_type == "thinking_delta":
            return StreamEvent(
                type="thinking_delta", text=delta.get("thinking", ""), block_index=block_index
            )
        if delta_type == "signature_delta":
            return StreamEvent(
                type="signature_delta", text=delta.get("signature", ""), block_index=block_index
            )
        if delta_type == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
            usage=data.get("usage") or {},
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


class ResponseEventType(StrEnum):
    CONTENT_DELTA = "content_delta"
    THINKING_DELTA = "thinking_delta"
    TOOL_CALL_START = "tool_call_start"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ResponseEvent:
    """Structured output of the stream processor."""

    type: ResponseEventType
    text: str = ""
    tool_call: ToolCall | None = None
    response: ProviderResponse | None = None
    retryable: bool = False
    cancelled: bool = False
    partial_text: str = ""  # text received before an error/cancel, never committed by default
    cause: BaseException | None = None

    @property
    def terminal(self) -> bool:
        return self.type in (ResponseEventType.COMPLETE, ResponseEventType.ERROR)


@dataclass
class _BlockAccumulator:
    kind: str  # text, thinking, tool_use
    parts: list[str] = field(default_factory=list)
    tool_id: str = ""
    tool_name: str = ""
    signature: str = ""


class StreamProcessor:
    """Assembles one provider stream into ordered ResponseEvents.

    One instance per provider call; the buffers die with it, so a retried
    call always starts from an empty buffer.
    """

    def __init__(self, cancellation_token: CancellationToken | None = None) -> None:
        self._token = cancellation_token
        self._open: dict[int, _BlockAccumulator] = {}
        self._blocks: dict[int, ContentBlock] = {}
        self._text_parts: list[str] = []
        self._usage = TokenUsage()
        self._stop_reason = ""

    @property
    def partial_text(self) -> str:
        return "".join(self._text_parts)

    async def process(
        self, stream: AsyncIterator[dict[str, Any]]
    ) -> AsyncGenerator[ResponseEvent, None]:
        """Yield events for the stream; the last one is always terminal."""
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    if self._token is not None:
                        data = await self._token.race(iterator.__anext__())
                    else:
                        data = await iterator.__anext__()
                except StopAsyncIteration:
                    yield self._error("Stream ended before message_stop", retryable=True)
                    return
                except CancellationError as e:
                    yield self._error(str(e) or "cancelled", cancelled=True, cause=e)
                    return
                except ProviderError as e:
                    yield self._error(str(e), retryable=e.retryable, cause=e)
                    return
                except Exception as e:
                    logger.warning("Provider stream raised %s: %s", type(e).__name__, e)
                    yield self._error(str(e) or type(e).__name__, retryable=is_retryable(e), cause=e)
                    return

                event = parse_sse_event(data)
                if event is None:
                    continue

                if event.type == "error":
                    yield self._error(
                        event.text, retryable=event.block_type in _RETRYABLE_STREAM_ERRORS
                    )
                    return

                if event.type == "message_stop":
                    unclosed = [a.tool_name for a in self._open.values() if a.kind == "tool_use"]
                    if unclosed:
                        yield self._malformed(
                            f"tool_use block for {unclosed[0] or 'unknown tool'} never closed"
                        )
                        return
                    yield ResponseEvent(type=ResponseEventType.COMPLETE, response=self._assemble())
                    return

                for out in self._handle(event):
                    yield out
                    if out.type == ResponseEventType.ERROR:
                        return
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("Ignoring error while closing provider stream", exc_info=True)

    def _handle(self, event: StreamEvent) -> list[ResponseEvent]:
        if event.type == "message_start":
            self._usage.input_tokens = int(event.usage.get("input_tokens") or 0)
            return []

        if event.type == "done":
            self._stop_reason = event.stop_reason
            if "output_tokens" in event.usage:
                self._usage.output_tokens = int(event.usage["output_tokens"] or 0)
            return []

        if event.type == "tool_start":
            self._open[event.block_index] = _BlockAccumulator(
                kind="tool_use", tool_id=event.tool_id, tool_name=event.tool_name
            )
            return []

        if event.type == "block_start":
            acc = _BlockAccumulator(kind=event.block_type or "text")
            if event.text:
                acc.parts.append(event.text)
            self._open[event.block_index] = acc
            return []

        acc = self._open.get(event.block_index)

        if event.type == "text_delta":
            if acc is None:
                acc = self._open.setdefault(event.block_index, _BlockAccumulator(kind="text"))
            acc.parts.append(event.text)
            self._text_parts.append(event.text)
            return [ResponseEvent(type=ResponseEventType.CONTENT_DELTA, text=event.text)]

        if event.type == "thinking_delta":
            if acc is None:
                acc = self._open.setdefault(event.block_index, _BlockAccumulator(kind="thinking"))
            acc.parts.append(event.text)
            return [ResponseEvent(type=ResponseEventType.THINKING_DELTA, text=event.text)]

        if event.type == "signature_delta":
            if acc is not None:
                acc.signature += event.text
            return []

        if event.type == "tool_input_delta":
            if acc is not None:
                acc.parts.append(event.text)
            return []

        if event.type == "block_stop":
            acc = self._open.pop(event.block_index, None)
            if acc is None:
                return []
            return self._close_block(event.block_index, acc)

        return []

    def _close_block(self, index: int, acc: _BlockAccumulator) -> list[ResponseEvent]:
        joined = "".join(acc.parts)
        if acc.kind == "tool_use":
            if not acc.tool_id or not acc.tool_name:
                return [self._malformed("Malformed tool_use block: missing id or name")]
            try:
                tool_input = json.loads(joined) if joined else {}
            except json.JSONDecodeError as e:
                return [self._malformed(f"Malformed tool input for {acc.tool_name}: {e}")]
            if not isinstance(tool_input, dict):
                return [self._malformed(f"Tool input for {acc.tool_name} is not an object")]
            self._blocks[index] = ToolUseBlock(id=acc.tool_id, name=acc.tool_name, input=tool_input)
            call = ToolCall(id=acc.tool_id, name=acc.tool_name, input=tool_input)
            return [ResponseEvent(type=ResponseEventType.TOOL_CALL_START, tool_call=call)]
        if acc.kind in ("thinking", "redacted_thinking"):
            self._blocks[index] = ThinkingBlock(thinking=joined, signature=acc.signature)
            return []
        self._blocks[index] = TextBlock(text=joined)
        return []

    def _assemble(self) -> ProviderResponse:
        # Text and thinking blocks still open at message_stop are closed in index order
        for index in sorted(self._open):
            acc = self._open[index]
            logger.warning("Closing %s block %d left open at message_stop", acc.kind, index)
            self._close_block(index, acc)
        self._open.clear()
        content = [self._blocks[i] for i in sorted(self._blocks)]
        stop_reason = self._stop_reason or (
            "tool_use" if any(isinstance(b, ToolUseBlock) for b in content) else "end_turn"
        )
        return ProviderResponse(content=content, stop_reason=stop_reason, usage=self._usage)

    def _malformed(self, message: str) -> ResponseEvent:
        return self._error(message, cause=MalformedResponseError(message))

    def _error(
        self,
        message: str,
        *,
        retryable: bool = False,
        cancelled: bool = False,
        cause: BaseException | None = None,
    ) -> ResponseEvent:
        return ResponseEvent(
            type=ResponseEventType.ERROR,
            text=message,
            retryable=retryable,
            cancelled=cancelled,
            partial_text=self.partial_text,
            cause=cause,
        )
