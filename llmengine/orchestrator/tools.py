"""
Tool execution orchestrator.

Resolves a tool name to its plugin, applies the validation gate, runs the
plugin and classifies the outcome.  Provider strategies drive it from their
chunk normalizers through ``run_tool_calls``; ``LlmEngine.complete`` drives it
through ``execute``.

Outcomes are values, not exceptions:

``ToolCompleted``
    The result goes back into the thread.
``ToolCanceled``
    Denied by validation or cancelled; the tool round stops.
``ToolAborted``
    Validation aborted; carries the ``ToolAbortChunk`` to surface.

Only a plugin that never produced a result raises
(``ToolResultMissingError``).
"""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Union

from llmengine.errors import CANCELLED_MESSAGE, ToolResultMissingError
from llmengine.llm.types import (
    LlmChunk,
    StreamingContext,
    StreamSwitchChunk,
    ToolAbortChunk,
    ToolCall,
    ToolChunk,
    ToolChunkCall,
    ToolState,
    ValidationCallback,
    halts_tool_round,
)
from llmengine.plugins.base import Plugin, PluginKind
from llmengine.plugins.registry import PluginRegistry
from llmengine.types import (
    ErrorCode,
    PluginExecutionContext,
    PluginExecutionUpdate,
    ResultUpdate,
    ValidationDecision,
    ValidationResponse,
)

if TYPE_CHECKING:
    from llmengine.llm.providers.base import ProviderStrategy

logger = logging.getLogger(__name__)


@dataclass
class ToolCompleted:
    content: Any


@dataclass
class ToolCanceled:
    content: Any


@dataclass
class ToolAborted:
    chunk: ToolAbortChunk


ToolOutcome = Union[ToolCompleted, ToolCanceled, ToolAborted]


def _cancelled_result(validation: ValidationResponse | None = None) -> ResultUpdate:
    return ResultUpdate(
        result={"error": CANCELLED_MESSAGE, "code": ErrorCode.CANCELLED},
        canceled=True,
        validation=validation,
    )


def _is_cancellation(error: Exception) -> bool:
    return str(error) == CANCELLED_MESSAGE


class ToolOrchestrator:
    """
    Parameters
    ----------
    registry : PluginRegistry
        Plugins the tool names are resolved against.
    provider : str
        Provider id used to prefix log lines and errors.
    """

    def __init__(self, registry: PluginRegistry, provider: str = "engine") -> None:
        self.registry = registry
        self.provider = provider

    # ------------------------------------------------------------------
    # Descriptions
    # ------------------------------------------------------------------

    def preparation_description(self, tool: str) -> str:
        plugin = self.registry.plugin_for_tool(tool)
        return (plugin.preparation_description(tool) if plugin else "") or ""

    def running_description(self, tool: str, args: Any) -> str:
        plugin = self.registry.plugin_for_tool(tool)
        return (plugin.running_description(tool, args) if plugin else "") or ""

    def completed_description(self, tool: str, args: Any, result: Any) -> str | None:
        plugin = self.registry.plugin_for_tool(tool)
        return plugin.completed_description(tool, args, result) if plugin else None

    def canceled_description(self, tool: str, args: Any) -> str | None:
        plugin = self.registry.plugin_for_tool(tool)
        return plugin.canceled_description(tool, args) if plugin else None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _resolve(self, tool: str, args: Any) -> tuple[Plugin | None, Any]:
        plugin = self.registry.plugin_for_tool(tool)
        if plugin is None:
            return None, args
        match plugin.kind:
            case PluginKind.MULTI_TOOL if plugin.name != tool:
                return plugin, {"tool": tool, "parameters": args}
            case _:
                return plugin, args

    async def call_tool(
        self,
        context: PluginExecutionContext,
        tool: str,
        args: Any,
        validation_callback: ValidationCallback | None = None,
    ) -> AsyncIterator[PluginExecutionUpdate]:
        """
        Run *tool* and yield its updates.  The last update is always a
        ``ResultUpdate`` unless the plugin itself misbehaves.
        """
        plugin, payload = self._resolve(tool, args)
        if plugin is None:
            yield ResultUpdate(
                result={
                    "error": f"Tool {tool} does not exist. Check the tool list and try again.",
                    "code": ErrorCode.UNKNOWN_TOOL,
                }
            )
            return

        if context.cancelled:
            yield _cancelled_result()
            return

        validation: ValidationResponse | None = None
        if validation_callback is not None:
            validation = await validation_callback(context, tool, args)
            if validation.decision is not ValidationDecision.ALLOW:
                yield ResultUpdate(
                    result={
                        "error": f"Tool {tool} execution denied by validation function. "
                        f"Reason: {validation.reason or 'forbidden'}",
                        "code": ErrorCode.VALIDATION_DENIED,
                    },
                    validation=validation,
                )
                return

        if plugin.supports_updates:
            async with aclosing(plugin.execute_with_updates(context, payload)) as updates:
                async for update in updates:
                    if context.cancelled:
                        yield _cancelled_result(validation)
                        return
                    yield update
            return

        try:
            result = await plugin.execute(context, payload)
        except Exception as e:
            if context.cancelled or _is_cancellation(e):
                yield _cancelled_result(validation)
                return
            raise
        yield ResultUpdate(result=result, validation=validation)

    def process_tool_execution_result(
        self,
        tool: str,
        params: Any,
        last_update: ResultUpdate | None,
    ) -> ToolOutcome:
        if last_update is None:
            raise ToolResultMissingError(self.provider, tool)

        content = last_update.result
        if content is None:
            content = {"error": "No result from tool", "code": ErrorCode.NO_RESULT}
        logger.info(
            "[%s] tool call %s => %s",
            self.provider,
            tool,
            json.dumps(content, default=str)[:128],
        )

        validation = last_update.validation
        if validation is not None and validation.decision is ValidationDecision.ABORT:
            return ToolAborted(ToolAbortChunk(name=tool, params=params, reason=validation))

        if last_update.canceled or (
            validation is not None and validation.decision is ValidationDecision.DENY
        ):
            return ToolCanceled(content)

        return ToolCompleted(content)

    async def execute(
        self,
        context: PluginExecutionContext,
        tool: str,
        args: Any,
        validation_callback: ValidationCallback | None = None,
    ) -> ToolOutcome:
        """Run *tool* to completion, ignoring progress updates."""
        last_update: ResultUpdate | None = None
        async for update in self.call_tool(context, tool, args, validation_callback):
            if isinstance(update, ResultUpdate):
                last_update = update
        return self.process_tool_execution_result(tool, args, last_update)

    # ------------------------------------------------------------------
    # Streaming tool rounds
    # ------------------------------------------------------------------

    async def run_tool_call(
        self,
        context: StreamingContext,
        call: ToolCall,
        strategy: ProviderStrategy,
    ) -> AsyncIterator[LlmChunk]:
        """
        Execute one tool call, yielding its ``ToolChunk`` lifecycle.

        A completed result is folded into ``context.thread``; a cancelled or
        denied one is not.  An abort yields a ``ToolAbortChunk`` instead of a
        terminal tool chunk.
        """
        yield ToolChunk(
            id=call.id,
            name=call.function,
            state=ToolState.PREPARING,
            status=self.preparation_description(call.function),
        )

        args = json.loads(call.args) if call.args else {}

        try:
            yield ToolChunk(
                id=call.id,
                name=call.function,
                state=ToolState.RUNNING,
                status=self.running_description(call.function, args),
                call=ToolChunkCall(params=args),
            )

            last_update: ResultUpdate | None = None
            updates = self.call_tool(
                context.execution_context(), call.function, args, context.opts.tool_validation
            )
            async with aclosing(updates):
                async for update in updates:
                    if isinstance(update, ResultUpdate):
                        last_update = update
                    else:
                        yield ToolChunk(
                            id=call.id,
                            name=call.function,
                            state=ToolState.RUNNING,
                            status=update.status,
                            call=ToolChunkCall(params=args),
                        )

            outcome = self.process_tool_execution_result(call.function, args, last_update)

            match outcome:
                case ToolAborted(chunk=abort):
                    yield abort
                    return

                case ToolCanceled(content=content):
                    status = self.canceled_description(call.function, args)
                    if not status and isinstance(content, dict):
                        status = content.get("error")
                    yield ToolChunk(
                        id=call.id,
                        name=call.function,
                        state=ToolState.CANCELED,
                        status=status or "Tool execution was canceled",
                        call=ToolChunkCall(params=args, result=content),
                        done=True,
                    )
                    return

                case ToolCompleted(content=content):
                    yield ToolChunk(
                        id=call.id,
                        name=call.function,
                        state=ToolState.COMPLETED,
                        status=self.completed_description(call.function, args, content),
                        call=ToolChunkCall(params=args, result=content),
                        done=True,
                    )
                    strategy.fold_tool_result(context.thread, call, content)

        except Exception:
            if context.cancelled:
                yield ToolChunk(
                    id=call.id,
                    name=call.function,
                    state=ToolState.CANCELED,
                    status=self.canceled_description(call.function, args),
                    call=ToolChunkCall(params=args),
                    done=True,
                )
                return
            raise

    async def run_tool_calls(
        self,
        context: StreamingContext,
        calls: list[ToolCall],
        strategy: ProviderStrategy,
    ) -> AsyncIterator[LlmChunk]:
        """
        Run one tool round sequentially, then request the follow-up stream.

        The round stops without a stream switch on abort, on a cancelled or
        denied call, and on cooperative cancellation.
        """
        for call in calls:
            halted = False
            async for chunk in self.run_tool_call(context, call, strategy):
                yield chunk
                halted = halted or halts_tool_round(chunk)
            if halted or context.cancelled:
                return

        # a forced tool choice would loop forever
        if context.opts.tool_choice is not None and context.opts.tool_choice.type == "tool":
            context.opts.tool_choice = None

        yield StreamSwitchChunk(stream=await strategy.start_stream(context))
