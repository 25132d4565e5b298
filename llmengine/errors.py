"""Exception hierarchy.

Only conditions that must unwind the call stack live here.  Unknown tools,
denied validations and cancelled tool runs inside a streaming generation are
reported as chunk values instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from llmengine.llm.types import ToolAbortChunk


CANCELLED_MESSAGE = "Operation cancelled"


class LlmEngineError(Exception):
    """Base class for all engine errors."""


class ToolResultMissingError(LlmEngineError):
    """A plugin finished without producing a terminal result update."""

    def __init__(self, provider: str, tool: str) -> None:
        super().__init__(f"[{provider}] tool call {tool} did not return any result")
        self.provider = provider
        self.tool = tool


class ToolExecutionCanceledError(LlmEngineError):
    """Raised by single-shot completion when a tool run is denied or cancelled."""

    def __init__(self, tool: str, message: str = "Tool execution was canceled") -> None:
        super().__init__(message)
        self.tool = tool


class ToolExecutionAbortedError(LlmEngineError):
    """Raised by single-shot completion when validation aborts a tool run."""

    def __init__(self, chunk: ToolAbortChunk) -> None:
        reason = chunk.reason.reason or "aborted"
        super().__init__(f"Tool {chunk.name} execution aborted: {reason}")
        self.chunk = chunk


class OperationCanceledError(LlmEngineError):
    """Cooperative cancellation observed through a ``CancellationToken``."""

    def __init__(self, message: str = CANCELLED_MESSAGE) -> None:
        super().__init__(message)


class ProviderNotFoundError(LlmEngineError, KeyError):
    """No provider registered (or buildable) under the requested name."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "provider not found"
