"""Mock plugin implementations for testing."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from llmengine.errors import CANCELLED_MESSAGE
from llmengine.plugins.base import (
    CustomToolPlugin,
    MultiToolPlugin,
    Plugin,
    PluginArrayItem,
    PluginArrayItems,
    PluginParameter,
)
from llmengine.types import PluginExecutionContext, ResultUpdate, StatusUpdate


class SearchPlugin(Plugin):
    def __init__(self, hits: int = 3) -> None:
        self.hits = hits
        self.calls: list[Any] = []

    @property
    def name(self) -> str:
        return "search"

    @property
    def description(self) -> str:
        return "Searches the knowledge base."

    @property
    def parameters(self) -> list[PluginParameter]:
        return [PluginParameter(name="q", description="Query", type="string", required=True)]

    def preparation_description(self, tool: str) -> str:
        return "Preparing search"

    def running_description(self, tool: str, args: Any) -> str:
        return f"Searching for {args.get('q')}"

    def completed_description(self, tool: str, args: Any, result: Any) -> str | None:
        return f"Found {result['hits']} hits"

    async def execute(self, context: PluginExecutionContext, payload: Any) -> Any:
        self.calls.append(payload)
        return {"hits": self.hits}


class NoHitsPlugin(Plugin):
    """A lookup that legitimately finds nothing."""

    @property
    def name(self) -> str:
        return "lookup"

    @property
    def description(self) -> str:
        return "Looks up records."

    async def execute(self, context: PluginExecutionContext, payload: Any) -> Any:
        return []


class ProgressPlugin(Plugin):
    supports_updates = True

    def __init__(self, steps: int = 2, cancel_after: int | None = None) -> None:
        self.steps = steps
        self.cancel_after = cancel_after
        self.cleaned_up = False

    @property
    def name(self) -> str:
        return "crawl"

    @property
    def description(self) -> str:
        return "Crawls a site, reporting progress."

    @property
    def parameters(self) -> list[PluginParameter]:
        return [
            PluginParameter(name="url", type="string", required=True),
            PluginParameter(
                name="tags",
                items=PluginArrayItems(
                    properties=[
                        PluginArrayItem(name="name", type="string", required=True),
                        PluginArrayItem(name="weight", type="number"),
                    ]
                ),
            ),
        ]

    async def execute_with_updates(
        self, context: PluginExecutionContext, payload: Any
    ) -> AsyncIterator[StatusUpdate | ResultUpdate]:
        try:
            for step in range(self.steps):
                if self.cancel_after is not None and step == self.cancel_after:
                    context.cancellation.cancel("user")
                yield StatusUpdate(status=f"step {step + 1}/{self.steps}")
                await asyncio.sleep(0)
            yield ResultUpdate(result={"pages": self.steps})
        finally:
            self.cleaned_up = True


class SilentPlugin(Plugin):
    """Reports progress but never a result."""

    supports_updates = True

    @property
    def name(self) -> str:
        return "silent"

    @property
    def description(self) -> str:
        return "Never finishes properly."

    async def execute_with_updates(
        self, context: PluginExecutionContext, payload: Any
    ) -> AsyncIterator[StatusUpdate | ResultUpdate]:
        yield StatusUpdate(status="working")


class FailingPlugin(Plugin):
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or RuntimeError("disk on fire")

    @property
    def name(self) -> str:
        return "fail"

    @property
    def description(self) -> str:
        return "Always raises."

    async def execute(self, context: PluginExecutionContext, payload: Any) -> Any:
        raise self.error


class CancelAwarePlugin(Plugin):
    """Cancels the token itself, then raises the cancellation message."""

    @property
    def name(self) -> str:
        return "slow"

    @property
    def description(self) -> str:
        return "Takes forever."

    def canceled_description(self, tool: str, args: Any) -> str | None:
        return "Slow tool stopped"

    async def execute(self, context: PluginExecutionContext, payload: Any) -> Any:
        context.cancellation.cancel("timeout")
        raise RuntimeError(CANCELLED_MESSAGE)


class MathPlugin(MultiToolPlugin):
    def __init__(self, name: str = "math", tools: list[str] | None = None) -> None:
        self._name = name
        self._tools = tools or ["add", "mul"]
        self.payloads: list[Any] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return "Arithmetic."

    @property
    def tool_names(self) -> list[str]:
        return self._tools

    async def execute(self, context: PluginExecutionContext, payload: Any) -> Any:
        self.payloads.append(payload)
        a, b = payload["parameters"]["a"], payload["parameters"]["b"]
        if payload["tool"] == "add":
            return {"value": a + b, "by": self._name}
        return {"value": a * b, "by": self._name}


class WebSearchPlugin(CustomToolPlugin):
    @property
    def name(self) -> str:
        return "web_search"

    @property
    def description(self) -> str:
        return "Vendor-hosted search."

    async def get_tools(self) -> dict:
        return {"type": "web_search_preview"}


class NativeOnlyPlugin(Plugin):
    @property
    def name(self) -> str:
        return "native"

    @property
    def description(self) -> str:
        return "Handled by the provider."

    @property
    def serialize_in_tools(self) -> bool:
        return False


class DisabledPlugin(SearchPlugin):
    @property
    def name(self) -> str:
        return "disabled"

    @property
    def enabled(self) -> bool:
        return False
