"""
Plugin abstraction.

Plugins come in a closed set of variants tagged by ``PluginKind``:

``SIMPLE``
    One plugin, one tool.  Its parameters are turned into a function schema.
``CUSTOM``
    Ships its own tool descriptor(s) through ``get_tools``.
``MULTI_TOOL``
    Dispatches among several tool names; receives ``{"tool", "parameters"}``.

Independently of the variant, a plugin either runs single-shot (``execute``)
or reports progress (``supports_updates`` + ``execute_with_updates``).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator

from llmengine.types import PluginExecutionContext, PluginExecutionUpdate


class PluginKind(Enum):
    SIMPLE = "simple"
    CUSTOM = "custom"
    MULTI_TOOL = "multi_tool"


@dataclass
class PluginArrayItem:
    name: str
    type: str
    description: str = ""
    required: bool = False


@dataclass
class PluginArrayItems:
    type: str | None = None
    properties: list[PluginArrayItem] | None = None


@dataclass
class PluginParameter:
    name: str
    description: str = ""
    type: str | None = None
    required: bool = False
    enum: list[str] | None = None
    items: PluginArrayItems | None = None


class Plugin(ABC):
    kind: PluginKind = PluginKind.SIMPLE
    supports_updates: bool = False

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    def parameters(self) -> list[PluginParameter]:
        return []

    @property
    def enabled(self) -> bool:
        return True

    @property
    def serialize_in_tools(self) -> bool:
        """False for vendor-native tools handled by the provider itself."""
        return True

    def preparation_description(self, tool: str) -> str:
        return ""

    def running_description(self, tool: str, args: Any) -> str:
        return ""

    def completed_description(self, tool: str, args: Any, result: Any) -> str | None:
        return None

    def canceled_description(self, tool: str, args: Any) -> str | None:
        return None

    async def execute(self, context: PluginExecutionContext, payload: Any) -> Any:
        raise NotImplementedError(f"{self.name} does not support single-shot execution")

    async def execute_with_updates(
        self, context: PluginExecutionContext, payload: Any
    ) -> AsyncIterator[PluginExecutionUpdate]:
        raise NotImplementedError(f"{self.name} does not report progress")
        if False:  # pragma: no cover
            yield  # type: ignore[misc]


class CustomToolPlugin(Plugin):
    kind = PluginKind.CUSTOM

    @abstractmethod
    async def get_tools(self) -> dict | list[dict]:
        """Return the provider-ready tool descriptor(s) for this plugin."""
        ...


class MultiToolPlugin(Plugin):
    kind = PluginKind.MULTI_TOOL

    @property
    @abstractmethod
    def tool_names(self) -> list[str]: ...

    def handles_tool(self, name: str) -> bool:
        return name in self.tool_names
