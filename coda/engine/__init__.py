"""Turn engine -- one user query in, one TurnOutcome out.

Provider streaming, retries, tool execution and history compression are
coordinated by TurnEngine; the pieces are usable on their own too.
"""

from coda.engine.cancellation import CancellationToken
from coda.engine.channel import TurnEvent, TurnEventChannel, TurnEventSubscription, TurnEventType
from coda.engine.compression import (
    CompressionOptions,
    CompressionStrategy,
    MemoryCompressor,
    TokenEstimator,
)
from coda.engine.errors import (
    CancellationError,
    CodaError,
    CompressionError,
    InvalidTransitionError,
    MalformedResponseError,
    OrphanedToolResultError,
    ProviderError,
    ToolExecutionError,
    TurnInProgressError,
    TurnTimeoutError,
)
from coda.engine.models import (
    CompressionResult,
    Conversation,
    GenerationConfig,
    Message,
    ProviderResponse,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolCall,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
    TurnOutcome,
    TurnRequest,
    TurnStatus,
)
from coda.engine.provider import AnthropicProvider, ModelProvider
from coda.engine.retry import RetryPolicy
from coda.engine.streaming import ResponseEvent, ResponseEventType, StreamProcessor
from coda.engine.tools import (
    FunctionTool,
    LocalToolBackend,
    Tool,
    ToolCoordinator,
    ToolOutput,
    ToolRegistry,
)
from coda.engine.turn import TurnEngine, TurnOptions, TurnState, TurnStateMachine

__all__ = [
    "AnthropicProvider",
    "CancellationError",
    "CancellationToken",
    "CodaError",
    "CompressionError",
    "CompressionOptions",
    "CompressionResult",
    "CompressionStrategy",
    "Conversation",
    "FunctionTool",
    "GenerationConfig",
    "InvalidTransitionError",
    "LocalToolBackend",
    "MalformedResponseError",
    "MemoryCompressor",
    "Message",
    "ModelProvider",
    "OrphanedToolResultError",
    "ProviderError",
    "ProviderResponse",
    "ResponseEvent",
    "ResponseEventType",
    "RetryPolicy",
    "StreamProcessor",
    "TextBlock",
    "ThinkingBlock",
    "TokenEstimator",
    "TokenUsage",
    "Tool",
    "ToolCall",
    "ToolCoordinator",
    "ToolExecutionError",
    "ToolOutput",
    "ToolRegistry",
    "ToolResult",
    "ToolResultBlock",
    "ToolUseBlock",
    "TurnEngine",
    "TurnEvent",
    "TurnEventChannel",
    "TurnEventSubscription",
    "TurnEventType",
    "TurnInProgressError",
    "TurnOptions",
    "TurnOutcome",
    "TurnRequest",
    "TurnState",
    "TurnStateMachine",
    "TurnStatus",
    "TurnTimeoutError",
]
