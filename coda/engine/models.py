"""Data model shared by the turn engine components.

Messages and content blocks are frozen once built.  The conversation is
the only mutable container, and the engine touches it only by appending
or, during compression, by swapping the summarized head.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from coda.engine.cancellation import CancellationToken

SUMMARY_KIND = "summary"


# ------------------------------------------------------------------
# Content blocks
# ------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ThinkingBlock:
    """Model reasoning. phase is ours; only thinking + signature go on the wire."""

    thinking: str
    phase: str = "reasoning"
    signature: str = ""

    def to_api(self) -> dict[str, Any]:
        block: dict[str, Any] = {"type": "thinking", "thinking": self.thinking}
        if self.signature:
            block["signature"] = self.signature
        return block


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_api(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }


ContentBlock = Union[TextBlock, ToolUseBlock, ThinkingBlock, ToolResultBlock]


def block_from_api(data: dict[str, Any]) -> ContentBlock:
    """Build a content block from its Anthropic wire dict."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text", ""))
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input") or {})
    if block_type in ("thinking", "redacted_thinking"):
        return ThinkingBlock(
            thinking=data.get("thinking", ""),
            signature=data.get("signature", ""),
        )
    if block_type == "tool_result":
        content = data.get("content", "")
        if isinstance(content, list):
            content = "".join(
                item.get("text", "") for item in content if isinstance(item, dict)
            )
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=content,
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unsupported content block type: {block_type!r}")


# ------------------------------------------------------------------
# Messages and conversation
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """A single message in a conversation."""

    role: str  # "user" or "assistant"
    content: str | tuple[ContentBlock, ...]
    kind: str = "message"  # SUMMARY_KIND for compression output

    @property
    def is_summary(self) -> bool:
        return self.kind == SUMMARY_KIND

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        if isinstance(self.content, str):
            return (TextBlock(self.content),)
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text blocks (tool and thinking blocks are skipped)."""
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_api(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [b.to_api() for b in self.content]}

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Message:
        content = data.get("content", "")
        if isinstance(content, list):
            return cls(role=data["role"], content=tuple(block_from_api(b) for b in content))
        return cls(role=data["role"], content=content)


@dataclass
class Conversation:
    """Conversation history owned by the caller and passed into each turn."""

    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    summary: str | None = None
    compression_count: int = 0

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def replace_head(self, messages: list[Message], summary: str) -> None:
        """Install a compressed history. Only the compressor path calls this."""
        self.messages = list(messages)
        self.summary = summary
        self.compression_count += 1

    def to_api(self) -> list[dict[str, Any]]:
        return [m.to_api() for m in self.messages]


# ------------------------------------------------------------------
# Tool calls
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(id=self.id, name=self.name, input=self.input)


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    content: str
    is_error: bool = False
    tool_name: str = ""
    duration_ms: int = 0

    def to_block(self) -> ToolResultBlock:
        return ToolResultBlock(
            tool_use_id=self.tool_call_id, content=self.content, is_error=self.is_error
        )


# ------------------------------------------------------------------
# Provider I/O
# ------------------------------------------------------------------


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    @classmethod
    def from_api(cls, usage: dict[str, Any] | None) -> TokenUsage:
        usage = usage or {}
        return cls(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )


@dataclass(frozen=True)
class GenerationConfig:
    """Per-call provider settings."""

    model: str
    system_prompt: str = ""
    temperature: float = 0.0
    max_tokens: int = 4096
    tools: tuple[dict[str, Any], ...] | None = None


@dataclass
class ProviderResponse:
    """A complete (non-streamed or fully assembled) model response."""

    content: list[ContentBlock]
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=b.id, name=b.name, input=b.input)
            for b in self.content
            if isinstance(b, ToolUseBlock)
        ]


@dataclass(frozen=True)
class TurnRequest:
    """Everything one turn needs. Built once per turn."""

    messages: tuple[Message, ...]
    system_prompt: str
    model: str
    temperature: float
    max_tokens: int
    tools: tuple[dict[str, Any], ...] = ()
    cancellation_token: CancellationToken | None = None

    def generation_config(self, *, with_tools: bool = True) -> GenerationConfig:
        return GenerationConfig(
            model=self.model,
            system_prompt=self.system_prompt,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tools=self.tools if (with_tools and self.tools) else None,
        )


# ------------------------------------------------------------------
# Results
# ------------------------------------------------------------------


@dataclass
class CompressionResult:
    messages: list[Message]
    original_token_count: int
    new_token_count: int
    ratio: float
    summary_text: str = ""
    fallback: bool = False

    @property
    def compressed(self) -> bool:
        return bool(self.summary_text)


class TurnStatus(StrEnum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class TurnOutcome:
    """Terminal record of one turn."""

    final_text: str
    status: TurnStatus
    tool_calls_executed: list[ToolResult] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None
    error_cause: BaseException | None = None
    messages: list[Message] = field(default_factory=list)
    iterations: int = 0
