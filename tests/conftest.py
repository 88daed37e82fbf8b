"""Shared fixtures: settings, tool registry and a scripted fake provider.

The fake provider replays Anthropic SSE event dicts, so every engine test
runs through the real StreamProcessor with no network involved.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from coda.config import Settings
from coda.engine.models import GenerationConfig, ProviderResponse, TextBlock, TokenUsage
from coda.engine.tools import LocalToolBackend, ToolRegistry

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from any local .env file."""
    values: dict[str, Any] = {
        "retry_initial_delay": 0.0,
        "retry_max_delay": 0.0,
        "turn_timeout": 10.0,
        "event_bus_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(workspace_dir=str(tmp_path))


@pytest.fixture
def backend() -> LocalToolBackend:
    return LocalToolBackend()


@pytest.fixture
def registry(backend) -> ToolRegistry:
    return ToolRegistry([backend])


# ---------------------------------------------------------------------------
# SSE script builders
# ---------------------------------------------------------------------------


def sse_text(
    text: str,
    *,
    chunks: int = 1,
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> list[dict[str, Any]]:
    """A complete end_turn stream carrying one text block."""
    size = max(1, -(-len(text) // chunks))
    pieces = [text[i : i + size] for i in range(0, len(text), size)] or [""]
    events: list[dict[str, Any]] = [
        {"type": "message_start", "message": {"usage": {"input_tokens": input_tokens}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    ]
    events += [
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": p}}
        for p in pieces
    ]
    events += [
        {"type": "content_block_stop", "index": 0},
        {
            "type": "message_delta",
            "delta": {"stop_reason": "end_turn"},
            "usage": {"output_tokens": output_tokens},
        },
        {"type": "message_stop"},
    ]
    return events


def sse_tool_use(
    calls: list[tuple[str, str, dict[str, Any]]],
    *,
    text: str = "",
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> list[dict[str, Any]]:
    """A tool_use stream: optional leading text, then one block per (id, name, input)."""
    events: list[dict[str, Any]] = [
        {"type": "message_start", "message": {"usage": {"input_tokens": input_tokens}}},
    ]
    index = 0
    if text:
        events += [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
            {"type": "content_block_stop", "index": 0},
        ]
        index = 1
    for call_id, name, tool_input in calls:
        events += [
            {
                "type": "content_block_start",
                "index": index,
                "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
            },
            {
                "type": "content_block_delta",
                "index": index,
                "delta": {"type": "input_json_delta", "partial_json": json.dumps(tool_input)},
            },
            {"type": "content_block_stop", "index": index},
        ]
        index += 1
    events += [
        {
            "type": "message_delta",
            "delta": {"stop_reason": "tool_use"},
            "usage": {"output_tokens": output_tokens},
        },
        {"type": "message_stop"},
    ]
    return events


async def hang() -> None:
    """Script step that never finishes on its own."""
    await asyncio.Event().wait()


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------

# A script is a list of SSE dicts, exceptions (raised at that point) and
# zero-arg coroutine functions (awaited at that point).  A bare exception
# instead of a list fails the call before any event.
Script = list[dict[str, Any] | BaseException | Callable[[], Awaitable[None]]] | BaseException


class ScriptedProvider:
    """ModelProvider that replays one script per generate_stream() call."""

    def __init__(self, scripts: list[Script] | None = None, summary: str | BaseException = "summary text"):
        self.scripts = list(scripts or [])
        self.summary = summary
        self.stream_calls: list[tuple[list[dict[str, Any]], GenerationConfig]] = []
        self.generate_calls: list[tuple[list[dict[str, Any]], GenerationConfig]] = []

    async def generate(
        self, messages: list[dict[str, Any]], config: GenerationConfig
    ) -> ProviderResponse:
        self.generate_calls.append((messages, config))
        if isinstance(self.summary, BaseException):
            raise self.summary
        return ProviderResponse(
            content=[TextBlock(self.summary)],
            stop_reason="end_turn",
            usage=TokenUsage(input_tokens=5, output_tokens=5),
        )

    async def generate_stream(self, messages: list[dict[str, Any]], config: GenerationConfig):
        self.stream_calls.append((messages, config))
        if not self.scripts:
            raise AssertionError("provider called more times than scripted")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        for step in script:
            if isinstance(step, BaseException):
                raise step
            if callable(step):
                await step()
                continue
            yield step


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()
