"""Core types for the completion engine: models, messages, payloads and chunks."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, TypedDict, Union

from jsonschema.validators import validator_for

from llmengine.cancellation import CancellationToken
from llmengine.types import PluginExecutionContext, ValidationResponse

Role = Literal["system", "developer", "user", "assistant", "tool"]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


@dataclass
class ModelCapabilities:
    tools: bool = False
    vision: bool = False
    reasoning: bool = False
    caching: bool = False


@dataclass
class ChatModel:
    id: str
    name: str
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

_TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/javascript",
    "application/x-sh",
}


@dataclass
class Attachment:
    """
    A file attached to a message.

    *content* is plain text for text attachments and base64 data for images.
    It is ``None`` for history loaded without attachment bodies.
    """

    content: str | None
    mime_type: str = "text/plain"
    url: str = ""

    def is_text(self) -> bool:
        return self.mime_type.startswith("text/") or self.mime_type in _TEXT_MIME_TYPES

    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass
class Message:
    role: Role
    content: str | None
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def content_for_model(self) -> str | None:
        return self.content


# ---------------------------------------------------------------------------
# Provider payload
# ---------------------------------------------------------------------------


class TextSegment(TypedDict):
    type: Literal["text"]
    text: str


class ImageUrl(TypedDict):
    url: str


class ImageSegment(TypedDict):
    type: Literal["image_url"]
    image_url: ImageUrl


ContentSegment = Union[TextSegment, ImageSegment]


@dataclass
class CompletionPayload:
    """One provider-shaped message of a request thread."""

    role: Role
    content: str | list[ContentSegment]
    images: list[str] | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict] | None = None

    def to_dict(self) -> dict:
        d: dict = {"role": self.role, "content": self.content}
        if self.images is not None:
            d["images"] = list(self.images)
        if self.tool_call_id is not None:
            d["tool_call_id"] = self.tool_call_id
        if self.tool_calls is not None:
            d["tool_calls"] = self.tool_calls
        return d


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


@dataclass
class ToolChoice:
    type: Literal["auto", "none", "required", "tool"] = "auto"
    name: str | None = None


@dataclass
class StructuredOutput:
    """Ask the model to answer with JSON matching *schema*."""

    name: str
    schema: dict

    def __post_init__(self) -> None:
        # Raises jsonschema.SchemaError on a malformed schema.
        validator_for(self.schema).check_schema(self.schema)


ValidationCallback = Callable[
    [PluginExecutionContext, str, Any], Awaitable[ValidationResponse]
]


@dataclass
class CompletionOptions:
    tools: bool = True
    tool_choice: ToolChoice | None = None
    tool_validation: ValidationCallback | None = None
    caching: bool = False
    vision_fallback_model: ChatModel | None = None
    usage: bool = False
    citations: bool = False
    structured_output: StructuredOutput | None = None
    cancellation: CancellationToken | None = None

    # model options
    context_window_size: int | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_k: int | None = None
    top_p: float | None = None
    reasoning: bool | None = None
    reasoning_effort: Literal["low", "medium", "high"] | None = None
    custom_opts: dict = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancellation is not None and self.cancellation.cancelled


# ---------------------------------------------------------------------------
# Usage & responses
# ---------------------------------------------------------------------------


@dataclass
class LlmUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    prompt_tokens_details: dict | None = None
    completion_tokens_details: dict | None = None

    def add(self, prompt_tokens: int | None, completion_tokens: int | None) -> None:
        self.prompt_tokens += prompt_tokens or 0
        self.completion_tokens += completion_tokens or 0

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ToolCall:
    """
    A tool call declared by the provider.

    *id* is unique within one streaming context, *args* is the serialized
    argument object and *message* the assistant payload that carried the call.
    """

    id: str
    function: str
    args: str
    message: CompletionPayload | None = None


@dataclass
class ToolCallInfo:
    name: str
    params: Any
    result: Any


@dataclass
class LlmResponse:
    content: str | None = None
    tool_calls: list[ToolCallInfo] = field(default_factory=list)
    usage: LlmUsage | None = None
    type: str = field(default="text", init=False)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class NativeStream:
    """
    A vendor stream plus the handle used to abort it on the provider side.

    Iterating a ``NativeStream`` iterates the underlying vendor chunks.
    """

    def __init__(
        self,
        source: AsyncIterator[Any],
        on_abort: Callable[[str | None], None] | None = None,
    ) -> None:
        self._source = source
        self._on_abort = on_abort
        self.abort_count = 0
        self.abort_reason: str | None = None

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._source.__aiter__()

    @property
    def aborted(self) -> bool:
        return self.abort_count > 0

    def abort(self, reason: str | None = None) -> None:
        self.abort_count += 1
        self.abort_reason = reason
        if self._on_abort is not None:
            self._on_abort(reason)

    async def aclose(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()


class ToolState(str, Enum):
    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"
    ERROR = "error"


@dataclass
class ContentChunk:
    type: Literal["content", "reasoning"]
    text: str
    done: bool = False


@dataclass
class ToolChunkCall:
    params: Any
    result: Any = None


@dataclass
class ToolChunk:
    id: str
    name: str
    state: ToolState
    status: str | None = None
    call: ToolChunkCall | None = None
    done: bool = False
    type: str = field(default="tool", init=False)


@dataclass
class UsageChunk:
    usage: LlmUsage
    type: str = field(default="usage", init=False)


@dataclass
class StreamSwitchChunk:
    stream: NativeStream
    type: str = field(default="stream", init=False)


@dataclass
class MessageIdChunk:
    id: str
    type: str = field(default="message_id", init=False)


@dataclass
class ToolAbortChunk:
    name: str
    params: Any
    reason: ValidationResponse
    type: str = field(default="tool_abort", init=False)


LlmChunk = Union[
    ContentChunk, ToolChunk, UsageChunk, StreamSwitchChunk, MessageIdChunk, ToolAbortChunk
]


def halts_tool_round(chunk: LlmChunk) -> bool:
    """True for chunks after which no further tool call of the round may run."""
    if isinstance(chunk, ToolAbortChunk):
        return True
    return isinstance(chunk, ToolChunk) and chunk.state is ToolState.CANCELED


@dataclass
class StreamingContext:
    """
    Per-generation state threaded through every stream switch.

    Exactly one exists per ``LlmEngine.generate`` call and only that
    generation mutates it.
    """

    model: ChatModel
    thread: list[CompletionPayload]
    opts: CompletionOptions
    usage: LlmUsage = field(default_factory=LlmUsage)
    tool_calls: list[ToolCall] = field(default_factory=list)
    thinking: bool = False
    # Provider-private scratch state (e.g. partially assembled tool calls).
    scratch: dict = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.opts.cancelled

    def execution_context(self) -> PluginExecutionContext:
        return PluginExecutionContext(model=self.model.id, cancellation=self.opts.cancellation)


@dataclass
class StreamingResponse:
    stream: NativeStream
    context: StreamingContext


@dataclass
class RawToolDelta:
    """
    An incremental delta for a streaming tool call.

    Providers that stream tool calls in fragments emit these; the
    ``ToolCallAssembler`` accumulates them into finished ``ToolCall`` objects.
    """

    call_index: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""
