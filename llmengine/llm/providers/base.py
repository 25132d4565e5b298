"""Provider strategy: everything vendor-specific the engine core needs."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator

from llmengine.llm.payload import PayloadBuilder
from llmengine.llm.types import (
    ChatModel,
    CompletionOptions,
    CompletionPayload,
    LlmChunk,
    LlmUsage,
    ModelCapabilities,
    NativeStream,
    StreamingContext,
    ToolCall,
)
from llmengine.plugins.schema import available_tools

if TYPE_CHECKING:
    from llmengine.orchestrator.tools import ToolOrchestrator


@dataclass
class ProviderReply:
    """A non-streaming provider answer: text, or tool calls to run."""

    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    usage: LlmUsage | None = None


class ProviderStrategy(ABC):
    """
    A strategy encapsulates one vendor API.

    The engine core owns orchestration; a strategy starts native streams,
    normalizes their chunks and shapes requests.  ``LlmEngine`` attaches its
    ``ToolOrchestrator`` so normalizers can run tool rounds.
    """

    payload_builder: PayloadBuilder

    def __init__(self) -> None:
        self.payload_builder = PayloadBuilder()
        self._tools: ToolOrchestrator | None = None

    def attach(self, tools: ToolOrchestrator) -> None:
        self._tools = tools

    @property
    def tools(self) -> ToolOrchestrator:
        if self._tools is None:
            raise RuntimeError(f"{self.name} strategy is not attached to an engine")
        return self._tools

    # ------------------------------------------------------------------
    # Identity & catalog
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider id (e.g. ``"ollama"``)."""
        ...

    @abstractmethod
    def model_capabilities(self, model_id: str) -> ModelCapabilities: ...

    @abstractmethod
    async def list_models(self) -> list[str]: ...

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    @abstractmethod
    def build_request_options(
        self,
        model: ChatModel,
        thread: list[CompletionPayload],
        opts: CompletionOptions,
    ) -> dict:
        """Vendor request body, minus tools and streaming flags."""
        ...

    async def tool_definitions(self, model: ChatModel, opts: CompletionOptions) -> list[dict]:
        if not opts.tools or not model.capabilities.tools:
            return []
        return await available_tools(self.tools.registry)

    @abstractmethod
    async def start_stream(self, context: StreamingContext) -> NativeStream:
        """Start a native stream for the current state of *context*."""
        ...

    @abstractmethod
    def normalize_chunk(
        self, chunk: Any, context: StreamingContext
    ) -> AsyncIterator[LlmChunk]:
        """
        Translate one native chunk into zero or more uniform chunks.

        May run a tool round and end with a ``StreamSwitchChunk``.
        """
        ...

    @abstractmethod
    async def complete_once(
        self,
        model: ChatModel,
        thread: list[CompletionPayload],
        opts: CompletionOptions,
    ) -> ProviderReply: ...

    # ------------------------------------------------------------------
    # Thread folding
    # ------------------------------------------------------------------

    def tool_result_message(self, call: ToolCall, content: Any) -> CompletionPayload:
        return CompletionPayload(
            role="tool",
            content=json.dumps(content, default=str),
            tool_call_id=call.id,
        )

    def fold_tool_result(
        self, thread: list[CompletionPayload], call: ToolCall, content: Any
    ) -> None:
        """Append the assistant tool-call message (once) and the tool result."""
        if call.message is not None and not any(m is call.message for m in thread):
            thread.append(call.message)
        thread.append(self.tool_result_message(call, content))

    async def aclose(self) -> None:
        """Release transport resources."""
