"""Tests for the memory compressor and token estimator.

- TestTokenEstimator: ceil rounding, per-message overhead, monotonicity, calibration
- TestSplitIndex: preserved tail never starts on a tool result
- TestCompress: no-op, summarize, fallback, truncate, rolling summary
"""

import pytest

from coda.engine.compression import (
    FALLBACK_SUMMARY,
    SUMMARY_PREFIX,
    SUMMARY_SYSTEM_PROMPT,
    UPDATE_SYSTEM_PROMPT,
    CompressionOptions,
    CompressionStrategy,
    MemoryCompressor,
    TokenEstimator,
    make_summary_message,
    serialize_for_summary,
)
from coda.engine.errors import ProviderError
from coda.engine.models import Message, TextBlock, ToolResultBlock, ToolUseBlock
from tests.conftest import ScriptedProvider, make_settings


def _history(count: int, size: int = 400) -> list[Message]:
    """Alternating user/assistant plain-text messages of `size` chars each."""
    return [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"{i:03d}" + "x" * (size - 3))
        for i in range(count)
    ]


# ---------------------------------------------------------------------------
# TestTokenEstimator
# ---------------------------------------------------------------------------


class TestTokenEstimator:
    def test_rounds_up(self):
        estimator = TokenEstimator()
        assert estimator.estimate("abcde") == 2
        assert estimator.estimate("abcd") == 1
        assert estimator.estimate("") == 0

    def test_message_overhead(self):
        estimator = TokenEstimator()
        assert estimator.estimate_message(Message(role="user", content="x" * 400)) == 104

    def test_block_content_is_sized(self):
        estimator = TokenEstimator()
        message = Message(
            role="assistant",
            content=(TextBlock("hello"), ToolUseBlock(id="t1", name="bash", input={"command": "ls"})),
        )
        assert estimator.estimate_message(message) > estimator.estimate_message(
            Message(role="assistant", content="hello")
        )

    def test_monotonic_over_prefixes(self):
        """Appending messages never lowers the estimate."""
        estimator = TokenEstimator()
        messages = _history(20, size=37)
        estimates = [estimator.estimate_messages(messages[:n]) for n in range(len(messages) + 1)]
        assert estimates == sorted(estimates)

    def test_calibrate_moves_ratio_toward_observed(self):
        estimator = TokenEstimator()
        estimator.calibrate(input_chars=1000, actual_tokens=500)
        assert 0.25 < estimator.ratio < 0.5
        assert estimator.samples == 1

    def test_calibrate_ignores_empty_samples(self):
        estimator = TokenEstimator()
        estimator.calibrate(0, 100)
        estimator.calibrate(100, 0)
        assert estimator.ratio == 0.25
        assert estimator.samples == 0


# ---------------------------------------------------------------------------
# TestSplitIndex
# ---------------------------------------------------------------------------


class TestSplitIndex:
    def test_plain_history_keeps_exact_tail(self):
        messages = _history(30)
        assert MemoryCompressor._split_index(messages, 10) == 20

    def test_tail_grows_past_tool_result(self):
        messages = _history(30)
        messages[19] = Message(
            role="assistant", content=(ToolUseBlock(id="t1", name="bash", input={}),)
        )
        messages[20] = Message(role="user", content=(ToolResultBlock("t1", "ok"),))
        split = MemoryCompressor._split_index(messages, 10)
        assert split == 19
        assert isinstance(messages[split].blocks[0], ToolUseBlock)

    def test_keep_larger_than_history(self):
        assert MemoryCompressor._split_index(_history(4), 10) == 0

    def test_keep_zero_moves_everything_to_head(self):
        assert MemoryCompressor._split_index(_history(5), 0) == 5


# ---------------------------------------------------------------------------
# TestCompress
# ---------------------------------------------------------------------------


class TestCompress:
    @pytest.mark.asyncio
    async def test_noop_under_budget(self):
        provider = ScriptedProvider()
        compressor = MemoryCompressor(provider, make_settings())
        messages = _history(6)

        result = await compressor.compress(messages, CompressionOptions(max_tokens=10_000))

        assert result.messages == messages
        assert result.ratio == 1.0
        assert not result.compressed
        assert provider.generate_calls == []

    @pytest.mark.asyncio
    async def test_fifty_messages_summarized(self):
        """50 messages over budget -> one summary message plus the last 10, in order."""
        provider = ScriptedProvider(summary="## Goal\nShip the feature")
        compressor = MemoryCompressor(provider, make_settings())
        messages = _history(50)

        result = await compressor.compress(
            messages, CompressionOptions(max_tokens=1000, preserve_recent_messages=10)
        )

        assert len(result.messages) == 11
        summary = result.messages[0]
        assert summary.role == "user"
        assert summary.is_summary
        assert summary.text.startswith(SUMMARY_PREFIX)
        assert "Ship the feature" in summary.text
        assert result.messages[1:] == messages[40:]
        assert result.original_token_count == 50 * 104
        assert result.new_token_count < result.original_token_count
        assert 0 < result.ratio < 1
        assert not result.fallback

        assert len(provider.generate_calls) == 1
        sent, config = provider.generate_calls[0]
        assert config.system_prompt == SUMMARY_SYSTEM_PROMPT
        assert "000xxx" in sent[0]["content"]

    @pytest.mark.asyncio
    async def test_provider_failure_uses_fallback(self):
        provider = ScriptedProvider(summary=ProviderError("overloaded", status_code=529))
        compressor = MemoryCompressor(provider, make_settings())

        result = await compressor.compress(
            _history(30), CompressionOptions(max_tokens=500, preserve_recent_messages=10)
        )

        assert result.fallback
        assert result.summary_text == FALLBACK_SUMMARY
        assert result.messages[0].text.endswith(FALLBACK_SUMMARY)
        assert len(result.messages) == 11

    @pytest.mark.asyncio
    async def test_empty_summary_uses_fallback(self):
        provider = ScriptedProvider(summary="   ")
        compressor = MemoryCompressor(provider, make_settings())

        result = await compressor.compress(
            _history(30), CompressionOptions(max_tokens=500, preserve_recent_messages=10)
        )

        assert result.fallback
        assert result.summary_text == FALLBACK_SUMMARY

    @pytest.mark.asyncio
    async def test_truncate_strategy_skips_provider(self):
        provider = ScriptedProvider()
        compressor = MemoryCompressor(provider, make_settings())

        result = await compressor.compress(
            _history(30),
            CompressionOptions(
                max_tokens=500, preserve_recent_messages=4, strategy=CompressionStrategy.TRUNCATE
            ),
        )

        assert provider.generate_calls == []
        assert result.summary_text == FALLBACK_SUMMARY
        assert not result.fallback
        assert len(result.messages) == 5

    @pytest.mark.asyncio
    async def test_existing_summary_is_rolled_forward(self):
        provider = ScriptedProvider(summary="updated summary")
        compressor = MemoryCompressor(provider, make_settings())
        messages = [make_summary_message("older work on parser"), *_history(30)]

        result = await compressor.compress(
            messages, CompressionOptions(max_tokens=500, preserve_recent_messages=10)
        )

        sent, config = provider.generate_calls[0]
        assert config.system_prompt == UPDATE_SYSTEM_PROMPT
        assert "## Existing Summary" in sent[0]["content"]
        assert "older work on parser" in sent[0]["content"]
        assert result.messages[0].text.endswith("updated summary")
        assert sum(1 for m in result.messages if m.is_summary) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self):
        """Whole history inside the preserved window -> unchanged."""
        provider = ScriptedProvider()
        compressor = MemoryCompressor(provider, make_settings())
        messages = _history(5)

        result = await compressor.compress(
            messages, CompressionOptions(max_tokens=10, preserve_recent_messages=10)
        )

        assert result.messages == messages
        assert not result.compressed
        assert provider.generate_calls == []

    @pytest.mark.asyncio
    async def test_no_preserved_tail(self):
        provider = ScriptedProvider(summary="all of it")
        compressor = MemoryCompressor(provider, make_settings())

        result = await compressor.compress(
            _history(5), CompressionOptions(max_tokens=10, preserve_recent_messages=0)
        )

        assert len(result.messages) == 1
        assert result.messages[0].is_summary
        assert result.summary_text == "all of it"

    @pytest.mark.asyncio
    async def test_lone_summary_head_is_not_resummarized(self):
        """The tail alone is over budget -> no auxiliary call on every provider call."""
        provider = ScriptedProvider(summary="should not be asked")
        compressor = MemoryCompressor(provider, make_settings())
        messages = [make_summary_message("earlier work"), *_history(10)]

        result = await compressor.compress(
            messages, CompressionOptions(max_tokens=100, preserve_recent_messages=10)
        )

        assert result.messages == messages
        assert result.ratio == 1.0
        assert not result.compressed
        assert provider.generate_calls == []

    @pytest.mark.asyncio
    async def test_summary_model_from_options(self):
        provider = ScriptedProvider()
        compressor = MemoryCompressor(provider, make_settings())

        await compressor.compress(
            _history(30),
            CompressionOptions(max_tokens=500, preserve_recent_messages=10, model="claude-haiku"),
        )

        assert provider.generate_calls[0][1].model == "claude-haiku"

    def test_needs_compression(self):
        compressor = MemoryCompressor(ScriptedProvider(), make_settings())
        messages = _history(10)
        assert compressor.needs_compression(messages, 1000)
        assert not compressor.needs_compression(messages, 10_000)


class TestSerializeForSummary:
    def test_labels_tool_traffic(self):
        messages = [
            Message(role="user", content="list the files"),
            Message(
                role="assistant",
                content=(TextBlock("Looking"), ToolUseBlock(id="t1", name="list_dir", input={"path": "."})),
            ),
            Message(role="user", content=(ToolResultBlock("t1", "boom", is_error=True),)),
        ]
        text = serialize_for_summary(messages)
        assert "**User:** list the files" in text
        assert "[tool call list_dir]" in text
        assert "[tool error] boom" in text
