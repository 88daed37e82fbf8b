"""Error taxonomy for the turn engine.

Only ProviderError (after retries are exhausted) and TurnTimeoutError end
a turn in ERROR.  Tool and compression failures are absorbed and turned
into data; cancellation is a normal terminal state.
"""

from __future__ import annotations


class CodaError(Exception):
    """Base class for engine errors."""


class ProviderError(CodaError):
    """Model provider call failed.

    retryable marks the transient subset (429, 5xx, timeouts, dropped
    connections, overloaded in-stream errors).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after


class MalformedResponseError(ProviderError):
    """Provider returned something the engine cannot interpret."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class ToolExecutionError(CodaError):
    """A single tool call failed. Always recovered into a ToolResult."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class CompressionError(CodaError):
    """Auxiliary summarization failed. Recovered with a fallback summary."""


class TurnTimeoutError(CodaError):
    """The turn exceeded its end-to-end deadline."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Turn timed out after {timeout:g}s")
        self.timeout = timeout


class CancellationError(CodaError):
    """The turn was cancelled by the caller. Not a failure."""


class OrphanedToolResultError(CodaError):
    """A tool result references a tool call id that does not exist in the turn."""


class InvalidTransitionError(CodaError):
    """The turn state machine was asked to make an illegal transition."""


class TurnInProgressError(CodaError):
    """submit_query() was called while another turn is still running."""
