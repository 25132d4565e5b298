"""
Engine core -- the completion facade and the stream orchestration loop.

``LlmEngine`` is a fixed orchestration core parameterized by a
``ProviderStrategy``.  It:

1. Resolves the model (vision fallback included)
2. Builds the provider payload from the conversation
3. Drives the chain of native streams, one per tool round
4. Normalizes native chunks into uniform ``LlmChunk`` objects
5. Enforces cooperative cancellation
"""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from dataclasses import replace
from typing import AsyncIterator

from llmengine.errors import (
    LlmEngineError,
    ToolExecutionAbortedError,
    ToolExecutionCanceledError,
)
from llmengine.llm.providers.base import ProviderStrategy
from llmengine.llm.selection import select_model
from llmengine.llm.types import (
    ChatModel,
    CompletionOptions,
    CompletionPayload,
    ContentChunk,
    LlmChunk,
    LlmResponse,
    Message,
    NativeStream,
    StreamingContext,
    StreamingResponse,
    StreamSwitchChunk,
    ToolCallInfo,
)
from llmengine.orchestrator.tools import (
    ToolAborted,
    ToolCanceled,
    ToolCompleted,
    ToolOrchestrator,
)
from llmengine.plugins.base import Plugin
from llmengine.plugins.registry import PluginRegistry
from llmengine.types import ErrorCode, PluginExecutionContext

logger = logging.getLogger(__name__)


class LlmEngine:
    """
    Provider-agnostic completion engine.

    Parameters
    ----------
    strategy : ProviderStrategy
        Vendor adapter used for transport and chunk normalization.
    registry : PluginRegistry
        Plugins exposed as tools.  A fresh registry is created if omitted.
    max_tool_rounds : int
        Max tool rounds of a single-shot completion.
    """

    def __init__(
        self,
        strategy: ProviderStrategy,
        registry: PluginRegistry | None = None,
        max_tool_rounds: int = 20,
    ) -> None:
        self.strategy = strategy
        self.registry = registry if registry is not None else PluginRegistry()
        self.tools = ToolOrchestrator(self.registry, provider=strategy.name)
        self.max_tool_rounds = max_tool_rounds
        strategy.attach(self.tools)

    @property
    def name(self) -> str:
        return self.strategy.name

    # ------------------------------------------------------------------
    # Plugins
    # ------------------------------------------------------------------

    def add_plugin(self, plugin: Plugin) -> None:
        self.registry.add(plugin)

    def clear_plugins(self) -> None:
        self.registry.clear()

    @property
    def plugins(self) -> list[Plugin]:
        return self.registry.ordered()

    # ------------------------------------------------------------------
    # Models & payloads
    # ------------------------------------------------------------------

    def build_model(self, model_id: str) -> ChatModel:
        return ChatModel(
            id=model_id,
            name=model_id,
            capabilities=self.strategy.model_capabilities(model_id),
        )

    def to_model(self, model: ChatModel | str) -> ChatModel:
        if isinstance(model, ChatModel):
            return model
        return self.build_model(model)

    def build_payload(
        self,
        model: ChatModel,
        thread: list[Message] | str,
        opts: CompletionOptions | None = None,
    ) -> list[CompletionPayload]:
        return self.strategy.payload_builder.build(model, thread, opts)

    async def list_models(self) -> list[str]:
        return await self.strategy.list_models()

    # ------------------------------------------------------------------
    # Single-shot completion
    # ------------------------------------------------------------------

    async def complete(
        self,
        model: ChatModel | str,
        thread: list[Message] | str,
        opts: CompletionOptions | None = None,
    ) -> LlmResponse:
        """
        Run a non-streaming completion, executing tool rounds as needed.

        Denied or cancelled tools raise ``ToolExecutionCanceledError``; an
        aborting validation raises ``ToolExecutionAbortedError``.  Arguments
        that are not JSON are answered with an ``invalid_arguments`` result.
        """
        opts = replace(opts) if opts is not None else CompletionOptions()
        chat_model = select_model(self.to_model(model), thread, opts)
        payload = self.build_payload(chat_model, thread, opts)
        return await self._complete_round(chat_model, payload, opts, 0)

    async def _complete_round(
        self,
        model: ChatModel,
        payload: list[CompletionPayload],
        opts: CompletionOptions,
        round_no: int,
    ) -> LlmResponse:
        reply = await self.strategy.complete_once(model, payload, opts)

        if not reply.tool_calls:
            return LlmResponse(
                content=reply.content,
                usage=reply.usage if opts.usage else None,
            )

        if round_no >= self.max_tool_rounds:
            raise LlmEngineError(
                f"[{self.name}] exceeded {self.max_tool_rounds} tool rounds"
            )

        context = PluginExecutionContext(model=model.id, cancellation=opts.cancellation)
        infos: list[ToolCallInfo] = []
        for call in reply.tool_calls:
            try:
                args = json.loads(call.args) if call.args else {}
            except ValueError as e:
                # the carrier lists this call id, so it still needs an answer
                logger.warning("[%s] malformed arguments for %s: %s", self.name, call.function, e)
                content = {
                    "error": f"Arguments for tool {call.function} are not valid JSON: {e}",
                    "code": ErrorCode.INVALID_ARGUMENTS,
                }
                self.strategy.fold_tool_result(payload, call, content)
                infos.append(ToolCallInfo(name=call.function, params=call.args, result=content))
                continue

            outcome = await self.tools.execute(
                context, call.function, args, opts.tool_validation
            )
            match outcome:
                case ToolAborted(chunk=abort):
                    raise ToolExecutionAbortedError(abort)
                case ToolCanceled():
                    raise ToolExecutionCanceledError(call.function)
                case ToolCompleted(content=content):
                    self.strategy.fold_tool_result(payload, call, content)
                    infos.append(ToolCallInfo(name=call.function, params=args, result=content))

        if opts.tool_choice is not None and opts.tool_choice.type == "tool":
            opts.tool_choice = None

        completion = await self._complete_round(model, payload, opts, round_no + 1)
        completion.tool_calls = infos + completion.tool_calls

        if opts.usage and completion.usage is not None and reply.usage is not None:
            completion.usage.add(reply.usage.prompt_tokens, reply.usage.completion_tokens)

        return completion

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(
        self,
        model: ChatModel | str,
        thread: list[Message] | str,
        opts: CompletionOptions | None = None,
    ) -> StreamingResponse:
        """Create the streaming context and start the first native stream."""
        opts = replace(opts) if opts is not None else CompletionOptions()
        chat_model = select_model(self.to_model(model), thread, opts)
        context = StreamingContext(
            model=chat_model,
            thread=self.build_payload(chat_model, thread, opts),
            opts=opts,
        )
        return StreamingResponse(stream=await self.strategy.start_stream(context), context=context)

    async def generate(
        self,
        model: ChatModel | str,
        thread: list[Message] | str,
        opts: CompletionOptions | None = None,
    ) -> AsyncIterator[LlmChunk]:
        """
        Stream uniform chunks, following stream switches across tool rounds.

        Cancellation ends the sequence silently after aborting the native
        stream.  Transport and normalization failures propagate.
        """
        response = await self.stream(model, thread, opts)
        context = response.context
        current: NativeStream = response.stream
        pending: NativeStream | None = None

        try:
            while True:
                pending = None

                async for native in current:
                    if context.cancelled:
                        await self._abort(current, pending, context)
                        return

                    try:
                        async with aclosing(
                            self.strategy.normalize_chunk(native, context)
                        ) as chunks:
                            async for chunk in chunks:
                                match chunk:
                                    case StreamSwitchChunk(stream=replacement):
                                        pending = replacement
                                    case ContentChunk(done=True) if pending is not None:
                                        # the old stream is ending, not the generation
                                        chunk.done = False
                                        yield chunk
                                    case _:
                                        yield chunk

                                # after yielding, so a just-cancelled tool chunk still goes out
                                if context.cancelled:
                                    await self._abort(current, pending, context)
                                    return

                    except ToolExecutionAbortedError as e:
                        yield e.chunk

                if pending is None:
                    break
                current = pending
        finally:
            # releases the HTTP response on errors and early consumer exit
            await current.aclose()
            if pending is not None and pending is not current:
                await pending.aclose()

    async def _abort(
        self,
        current: NativeStream,
        pending: NativeStream | None,
        context: StreamingContext,
    ) -> None:
        reason = context.opts.cancellation.reason if context.opts.cancellation else None
        logger.info("[%s] generation cancelled%s", self.name, f": {reason}" if reason else "")
        current.abort(reason)
        await current.aclose()
        if pending is not None:
            await pending.aclose()

    async def aclose(self) -> None:
        await self.strategy.aclose()
