"""Memory compressor -- token estimation and history summarization.

Two pieces:
  TokenEstimator: cheap, deterministic, monotonic token estimate
  MemoryCompressor: replaces everything older than the recent window
  with one summary message produced by an auxiliary model call

A failed summarization never fails the turn; it degrades to a fixed
fallback summary.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from coda.config import Settings
from coda.engine.errors import CompressionError
from coda.engine.models import (
    SUMMARY_KIND,
    CompressionResult,
    GenerationConfig,
    Message,
    ToolResultBlock,
)
from coda.engine.provider import ModelProvider

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY = "conversation history compressed"
SUMMARY_PREFIX = "[Previous conversation summary]"

# Fixed per-message overhead (role + framing)
_MESSAGE_OVERHEAD = 4

# ------------------------------------------------------------------
# Summarization prompts
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """\
You are compressing the history of a coding session so it can continue
in a smaller context window. Output ONLY the summary, in this format:

## Goal
[1-2 sentences]

## Progress
- [What has been done, including files changed and commands run]

## Key Decisions
- **[Decision]**: [Rationale]

## Open Items
- [Unfinished work, unresolved errors, questions for the user]

## Critical Context
- [Exact file paths, function names, error messages, commands]
"""

UPDATE_SYSTEM_PROMPT = """\
You are updating the summary of a coding session with newer messages.
Keep everything in the existing summary unless it is superseded, add new
progress and decisions, move finished open items into Progress, and keep
exact paths, names and error messages. Use the same format.
Output ONLY the updated summary."""


class CompressionStrategy(StrEnum):
    SUMMARIZE = "summarize"
    TRUNCATE = "truncate"


@dataclass(frozen=True)
class CompressionOptions:
    max_tokens: int = 180_000
    preserve_recent_messages: int = 10
    strategy: CompressionStrategy = CompressionStrategy.SUMMARIZE
    model: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> CompressionOptions:
        return cls(
            max_tokens=settings.compression_threshold,
            preserve_recent_messages=settings.preserve_recent_messages,
            strategy=CompressionStrategy(settings.compression_strategy),
            model=settings.summary_model,
        )


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Chars-per-token heuristic with optional calibration.

    Starts at 4 chars per token (ratio 0.25), rounded up.  calibrate()
    nudges the ratio toward what the provider actually bills (EMA,
    alpha=0.1).  Every term is non-negative, so a longer sequence never
    estimates lower than its prefix under the same ratio.
    """

    def __init__(self, ratio: float = 0.25) -> None:
        self._ratio = ratio
        self._samples = 0

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    @property
    def samples(self) -> int:
        return self._samples

    def estimate(self, text: str | Any) -> int:
        if not isinstance(text, str):
            text = str(text)
        return math.ceil(len(text) * self._ratio)

    def estimate_message(self, message: Message) -> int:
        return self.estimate(serialize_content(message)) + _MESSAGE_OVERHEAD

    def estimate_messages(self, messages: list[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from real input_tokens usage."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


def serialize_content(message: Message) -> str:
    """Stable text form of a message's content used for sizing."""
    if isinstance(message.content, str):
        return message.content
    return json.dumps(
        [b.to_api() for b in message.content],
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
    )


def serialize_for_summary(messages: list[Message]) -> str:
    """Readable transcript of messages for the summarization prompt."""
    lines = []
    for msg in messages:
        role = "User" if msg.role == "user" else "Assistant"
        if isinstance(msg.content, str):
            lines.append(f"**{role}:** {msg.content}")
            continue
        parts = []
        for block in msg.content:
            data = block.to_api()
            if data["type"] == "text":
                parts.append(data["text"])
            elif data["type"] == "tool_use":
                parts.append(f"[tool call {data['name']}] {json.dumps(data['input'], ensure_ascii=False)}")
            elif data["type"] == "tool_result":
                label = "tool error" if data["is_error"] else "tool result"
                parts.append(f"[{label}] {data['content']}")
            elif data["type"] == "thinking":
                parts.append(f"[thinking] {data['thinking']}")
        lines.append(f"**{role}:** {chr(10).join(parts)}")
    return "\n\n".join(lines)


def make_summary_message(summary: str) -> Message:
    return Message(role="user", content=f"{SUMMARY_PREFIX}\n\n{summary}", kind=SUMMARY_KIND)


# ------------------------------------------------------------------
# Memory Compressor
# ------------------------------------------------------------------


class MemoryCompressor:
    """Keeps a message sequence under a token budget.

    Owns a TokenEstimator; the turn engine feeds it provider usage via
    compressor.estimator.calibrate().
    """

    def __init__(
        self,
        provider: ModelProvider,
        settings: Settings,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._provider = provider
        self._settings = settings
        self.estimator = estimator or TokenEstimator()

    def needs_compression(self, messages: list[Message], max_tokens: int) -> bool:
        return self.estimator.estimate_messages(messages) > max_tokens

    async def compress(
        self,
        messages: list[Message],
        options: CompressionOptions | None = None,
    ) -> CompressionResult:
        """Summarize everything older than the recent window.

        Returns the input unchanged (ratio 1.0) when it already fits.
        """
        options = options or CompressionOptions.from_settings(self._settings)
        messages = list(messages)
        original_tokens = self.estimator.estimate_messages(messages)

        if original_tokens <= options.max_tokens:
            return CompressionResult(
                messages=messages,
                original_token_count=original_tokens,
                new_token_count=original_tokens,
                ratio=1.0,
            )

        split = self._split_index(messages, options.preserve_recent_messages)
        head, tail = messages[:split], messages[split:]
        if not head or (len(head) == 1 and head[0].is_summary):
            # Only the recent window (and at most the previous summary) is left
            if head:
                logger.debug("Preserved tail alone exceeds the budget, not re-summarizing")
            return CompressionResult(
                messages=messages,
                original_token_count=original_tokens,
                new_token_count=original_tokens,
                ratio=1.0,
            )

        start_time = time.monotonic()
        fallback = False
        if options.strategy == CompressionStrategy.TRUNCATE:
            summary_text = FALLBACK_SUMMARY
        else:
            try:
                summary_text = await self._summarize(head, options)
            except CompressionError as e:
                logger.warning("Compression summary failed, using fallback: %s", e)
                summary_text = FALLBACK_SUMMARY
                fallback = True

        compressed = [make_summary_message(summary_text), *tail]
        new_tokens = self.estimator.estimate_messages(compressed)
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Compressed history: %d messages -> %d (%d -> %d tokens, %s, %d ms)",
            len(messages),
            len(compressed),
            original_tokens,
            new_tokens,
            "fallback" if fallback else options.strategy.value,
            duration_ms,
        )
        return CompressionResult(
            messages=compressed,
            original_token_count=original_tokens,
            new_token_count=new_tokens,
            ratio=new_tokens / original_tokens,
            summary_text=summary_text,
            fallback=fallback,
        )

    @staticmethod
    def _split_index(messages: list[Message], keep: int) -> int:
        """Start index of the preserved tail.

        The tail is at least `keep` messages.  It grows backwards past any
        leading tool-result message so a result is never separated from
        the tool_use that produced it.
        """
        split = max(0, len(messages) - keep)
        while 0 < split < len(messages) and any(
            isinstance(b, ToolResultBlock) for b in messages[split].blocks
        ):
            split -= 1
        return split

    async def _summarize(self, head: list[Message], options: CompressionOptions) -> str:
        """One auxiliary provider call. Raises CompressionError on any failure."""
        existing = None
        if head and head[0].is_summary:
            existing = head[0].text.removeprefix(SUMMARY_PREFIX).strip()
            head = head[1:]

        if existing:
            system = UPDATE_SYSTEM_PROMPT
            user_content = (
                f"## Existing Summary\n\n{existing}\n\n"
                f"## New Conversation\n\n{serialize_for_summary(head)}"
            )
        else:
            system = SUMMARY_SYSTEM_PROMPT
            user_content = serialize_for_summary(head)

        config = GenerationConfig(
            model=options.model or self._settings.summary_model,
            system_prompt=system,
            temperature=0.0,
            max_tokens=min(self._settings.max_tokens, 4096),
        )
        try:
            response = await self._provider.generate(
                [{"role": "user", "content": user_content}], config
            )
        except Exception as e:
            raise CompressionError(f"summarization request failed: {e}") from e

        summary = response.text.strip()
        if not summary:
            raise CompressionError("summarization returned no text")
        return summary
