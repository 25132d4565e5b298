"""LLM subsystem -- types, payload building and tool-call assembly."""

from llmengine.llm.types import (
    Attachment,
    ChatModel,
    CompletionOptions,
    CompletionPayload,
    ContentChunk,
    LlmChunk,
    LlmResponse,
    Message,
    ModelCapabilities,
    ToolCall,
    ToolChunk,
    ToolState,
)
from llmengine.llm.payload import PayloadBuilder
from llmengine.llm.tool_call_assembler import ToolCallAssembler

__all__ = [
    "Attachment",
    "ChatModel",
    "CompletionOptions",
    "CompletionPayload",
    "ContentChunk",
    "LlmChunk",
    "LlmResponse",
    "Message",
    "ModelCapabilities",
    "PayloadBuilder",
    "ToolCall",
    "ToolCallAssembler",
    "ToolChunk",
    "ToolState",
]
