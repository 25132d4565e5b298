"""Tests for tool resolution, validation and outcome classification."""

from __future__ import annotations

import json

import pytest

from llmengine.cancellation import CancellationToken
from llmengine.errors import ToolResultMissingError
from llmengine.llm.types import (
    ChatModel,
    CompletionOptions,
    CompletionPayload,
    ModelCapabilities,
    StreamingContext,
    StreamSwitchChunk,
    ToolAbortChunk,
    ToolCall,
    ToolChoice,
    ToolChunk,
    ToolState,
)
from llmengine.orchestrator.tools import (
    ToolAborted,
    ToolCanceled,
    ToolCompleted,
    ToolOrchestrator,
)
from llmengine.plugins.registry import PluginRegistry
from llmengine.types import (
    ErrorCode,
    PluginExecutionContext,
    ResultUpdate,
    StatusUpdate,
    ValidationDecision,
    ValidationResponse,
)
from tests.mock_plugins import (
    CancelAwarePlugin,
    FailingPlugin,
    MathPlugin,
    NoHitsPlugin,
    ProgressPlugin,
    SearchPlugin,
    SilentPlugin,
)
from tests.mock_providers import ScriptedStrategy, text


def _gate(decision: ValidationDecision, reason: str | None = None):
    async def gate(ctx, tool, args):
        return ValidationResponse(decision, reason)

    return gate


@pytest.fixture
def registry():
    reg = PluginRegistry()
    reg.add(SearchPlugin())
    reg.add(ProgressPlugin())
    reg.add(MathPlugin())
    return reg


@pytest.fixture
def orchestrator(registry):
    return ToolOrchestrator(registry, provider="test")


@pytest.fixture
def ctx():
    return PluginExecutionContext(model="m", cancellation=CancellationToken())


async def _collect(agen):
    return [u async for u in agen]


class TestCallTool:
    async def test_single_shot(self, orchestrator, ctx):
        updates = await _collect(orchestrator.call_tool(ctx, "search", {"q": "cats"}))
        assert updates == [ResultUpdate(result={"hits": 3})]

    async def test_unknown_tool_is_a_result_not_an_error(self, orchestrator, ctx):
        [update] = await _collect(orchestrator.call_tool(ctx, "nope", {}))
        assert update.result["code"] == ErrorCode.UNKNOWN_TOOL
        assert "Tool nope does not exist" in update.result["error"]

    async def test_multi_tool_payload_reshaped(self, orchestrator, registry, ctx):
        [update] = await _collect(orchestrator.call_tool(ctx, "add", {"a": 2, "b": 3}))
        assert update.result == {"value": 5, "by": "math"}
        assert registry.get("math").payloads == [{"tool": "add", "parameters": {"a": 2, "b": 3}}]

    async def test_progress_updates_forwarded(self, orchestrator, ctx):
        updates = await _collect(orchestrator.call_tool(ctx, "crawl", {"url": "x"}))
        assert [type(u) for u in updates] == [StatusUpdate, StatusUpdate, ResultUpdate]
        assert updates[-1].result == {"pages": 2}

    async def test_already_cancelled_skips_validation_and_execution(self, registry, ctx):
        called = []

        async def gate(c, tool, args):
            called.append(tool)
            return ValidationResponse(ValidationDecision.ALLOW)

        ctx.cancellation.cancel()
        [update] = await _collect(ToolOrchestrator(registry).call_tool(ctx, "search", {}, gate))

        assert update.canceled
        assert update.result["code"] == ErrorCode.CANCELLED
        assert called == []
        assert registry.get("search").calls == []

    async def test_denied_never_executes(self, registry, orchestrator, ctx):
        [update] = await _collect(
            orchestrator.call_tool(ctx, "search", {"q": "x"}, _gate(ValidationDecision.DENY, "nope"))
        )
        assert update.validation.decision is ValidationDecision.DENY
        assert "Reason: nope" in update.result["error"]
        assert registry.get("search").calls == []

    async def test_cancel_during_updates_keeps_validation(self, registry, ctx):
        registry.add(ProgressPlugin(steps=4, cancel_after=1))
        orchestrator = ToolOrchestrator(registry)
        updates = await _collect(
            orchestrator.call_tool(ctx, "crawl", {}, _gate(ValidationDecision.ALLOW))
        )

        assert isinstance(updates[0], StatusUpdate)
        assert updates[-1].canceled
        assert updates[-1].validation.decision is ValidationDecision.ALLOW
        assert len(updates) == 2

    async def test_cancel_during_updates_closes_plugin_generator(self, registry, ctx):
        plugin = ProgressPlugin(steps=4, cancel_after=1)
        registry.add(plugin)
        updates = await _collect(ToolOrchestrator(registry).call_tool(ctx, "crawl", {}))

        assert updates[-1].canceled
        assert plugin.cleaned_up

    async def test_consumer_leaving_early_closes_plugin_generator(self, registry, ctx):
        plugin = ProgressPlugin(steps=4)
        registry.add(plugin)
        updates = ToolOrchestrator(registry).call_tool(ctx, "crawl", {})

        first = await updates.__anext__()
        await updates.aclose()

        assert isinstance(first, StatusUpdate)
        assert plugin.cleaned_up

    async def test_cancellation_failure_converted(self, registry, ctx):
        registry.add(CancelAwarePlugin())
        [update] = await _collect(ToolOrchestrator(registry).call_tool(ctx, "slow", {}))
        assert update.canceled

    async def test_other_failures_propagate(self, registry, ctx):
        registry.add(FailingPlugin())
        with pytest.raises(RuntimeError, match="disk on fire"):
            await _collect(ToolOrchestrator(registry).call_tool(ctx, "fail", {}))


class TestProcessResult:
    def test_missing_terminal_update_is_fatal(self, orchestrator):
        with pytest.raises(ToolResultMissingError):
            orchestrator.process_tool_execution_result("search", {}, None)

    def test_empty_result_gets_fallback(self, orchestrator):
        outcome = orchestrator.process_tool_execution_result("search", {}, ResultUpdate(result=None))
        assert outcome == ToolCompleted({"error": "No result from tool", "code": ErrorCode.NO_RESULT})

    @pytest.mark.parametrize("result", [[], {}, 0, "", False])
    def test_falsy_result_is_kept(self, orchestrator, result):
        outcome = orchestrator.process_tool_execution_result(
            "search", {}, ResultUpdate(result=result)
        )
        assert isinstance(outcome, ToolCompleted)
        assert outcome.content == result
        assert type(outcome.content) is type(result)

    async def test_plugin_with_no_hits_completes(self, registry, ctx):
        registry.add(NoHitsPlugin())
        outcome = await ToolOrchestrator(registry).execute(ctx, "lookup", {})
        assert outcome == ToolCompleted([])

    def test_abort(self, orchestrator):
        validation = ValidationResponse(ValidationDecision.ABORT, "stop")
        outcome = orchestrator.process_tool_execution_result(
            "search", {"q": 1}, ResultUpdate(result={"error": "x"}, validation=validation)
        )
        assert outcome == ToolAborted(ToolAbortChunk(name="search", params={"q": 1}, reason=validation))

    def test_deny_and_cancel_are_canceled(self, orchestrator):
        deny = ResultUpdate(result={"e": 1}, validation=ValidationResponse(ValidationDecision.DENY))
        cancel = ResultUpdate(result={"e": 2}, canceled=True)
        assert isinstance(orchestrator.process_tool_execution_result("s", {}, deny), ToolCanceled)
        assert isinstance(orchestrator.process_tool_execution_result("s", {}, cancel), ToolCanceled)

    async def test_silent_plugin_fails_execute(self, registry, ctx):
        registry.add(SilentPlugin())
        with pytest.raises(ToolResultMissingError):
            await ToolOrchestrator(registry).execute(ctx, "silent", {})


def _streaming_context(registry, **opts) -> tuple[StreamingContext, ScriptedStrategy]:
    strategy = ScriptedStrategy(rounds=[[text("next", done=True)]])
    strategy.attach(ToolOrchestrator(registry, provider="scripted"))
    context = StreamingContext(
        model=ChatModel(id="m", name="m", capabilities=ModelCapabilities(tools=True)),
        thread=[CompletionPayload(role="user", content="find cats")],
        opts=CompletionOptions(cancellation=CancellationToken(), **opts),
    )
    return context, strategy


def _call(call_id: str, name: str, args: dict, carrier: CompletionPayload) -> ToolCall:
    return ToolCall(id=call_id, function=name, args=json.dumps(args), message=carrier)


class TestToolRounds:
    async def test_completed_round_folds_and_switches(self, registry):
        context, strategy = _streaming_context(registry)
        carrier = CompletionPayload(role="assistant", content="", tool_calls=[{"x": 1}])
        calls = [_call("0", "search", {"q": "cats"}, carrier)]

        chunks = await _collect(strategy.tools.run_tool_calls(context, calls, strategy))

        tool_chunks = [c for c in chunks if isinstance(c, ToolChunk)]
        assert [c.state for c in tool_chunks] == [
            ToolState.PREPARING,
            ToolState.RUNNING,
            ToolState.COMPLETED,
        ]
        assert tool_chunks[0].status == "Preparing search"
        assert tool_chunks[1].status == "Searching for cats"
        assert tool_chunks[2].status == "Found 3 hits"
        assert isinstance(chunks[-1], StreamSwitchChunk)

        assert context.thread[1] is carrier
        assert context.thread[2] == CompletionPayload(
            role="tool", content='{"hits": 3}', tool_call_id="0"
        )

    async def test_carrier_folded_once_for_several_calls(self, registry):
        context, strategy = _streaming_context(registry)
        carrier = CompletionPayload(role="assistant", content="", tool_calls=[])
        calls = [
            _call("0", "search", {"q": "a"}, carrier),
            _call("1", "add", {"a": 1, "b": 1}, carrier),
        ]
        await _collect(strategy.tools.run_tool_calls(context, calls, strategy))

        roles = [p.role for p in context.thread]
        assert roles == ["user", "assistant", "tool", "tool"]
        assert [p.tool_call_id for p in context.thread[2:]] == ["0", "1"]

    async def test_progress_updates_become_running_chunks(self, registry):
        context, strategy = _streaming_context(registry)
        calls = [_call("0", "crawl", {"url": "x"}, CompletionPayload(role="assistant", content=""))]
        chunks = await _collect(strategy.tools.run_tool_calls(context, calls, strategy))

        statuses = [c.status for c in chunks if isinstance(c, ToolChunk) and c.state is ToolState.RUNNING]
        assert statuses[1:] == ["step 1/2", "step 2/2"]

    async def test_denied_round_stops_without_switch(self, registry):
        context, strategy = _streaming_context(
            registry, tool_validation=_gate(ValidationDecision.DENY)
        )
        calls = [
            _call("0", "search", {"q": "cats"}, CompletionPayload(role="assistant", content="")),
            _call("1", "add", {"a": 1, "b": 2}, CompletionPayload(role="assistant", content="")),
        ]
        chunks = await _collect(strategy.tools.run_tool_calls(context, calls, strategy))

        assert [c.state for c in chunks] == [
            ToolState.PREPARING,
            ToolState.RUNNING,
            ToolState.CANCELED,
        ]
        assert chunks[-1].done
        assert not any(isinstance(c, (StreamSwitchChunk, ToolAbortChunk)) for c in chunks)
        assert len(context.thread) == 1

    async def test_aborted_round_yields_abort_chunk(self, registry):
        context, strategy = _streaming_context(
            registry, tool_validation=_gate(ValidationDecision.ABORT, "policy")
        )
        calls = [_call("0", "search", {"q": "cats"}, CompletionPayload(role="assistant", content=""))]
        chunks = await _collect(strategy.tools.run_tool_calls(context, calls, strategy))

        assert isinstance(chunks[-1], ToolAbortChunk)
        assert chunks[-1].reason.reason == "policy"
        assert not any(isinstance(c, StreamSwitchChunk) for c in chunks)
        assert len(context.thread) == 1

    async def test_forced_tool_choice_cleared(self, registry):
        context, strategy = _streaming_context(
            registry, tool_choice=ToolChoice(type="tool", name="search")
        )
        calls = [_call("0", "search", {"q": "x"}, CompletionPayload(role="assistant", content=""))]
        await _collect(strategy.tools.run_tool_calls(context, calls, strategy))
        assert context.opts.tool_choice is None

    async def test_cancel_aware_plugin_yields_canceled_chunk(self, registry):
        registry.add(CancelAwarePlugin())
        context, strategy = _streaming_context(registry)
        calls = [_call("0", "slow", {}, CompletionPayload(role="assistant", content=""))]
        chunks = await _collect(strategy.tools.run_tool_calls(context, calls, strategy))

        assert chunks[-1].state is ToolState.CANCELED
        assert chunks[-1].status == "Slow tool stopped"
        assert strategy.streams == []
