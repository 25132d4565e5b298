"""
Function-call schemas for plugins.

The OpenAI ``{"type": "function", "function": {...}}`` shape is what every
supported provider accepts, so it is the only one produced here.
"""

from __future__ import annotations

from typing import Any, Literal, TypedDict

from llmengine.plugins.base import CustomToolPlugin, Plugin, PluginKind, PluginParameter
from llmengine.plugins.registry import PluginRegistry


class FunctionParameters(TypedDict):
    type: Literal["object"]
    properties: dict[str, Any]
    required: list[str]


class FunctionDefinition(TypedDict):
    name: str
    description: str
    parameters: FunctionParameters


class LlmTool(TypedDict):
    type: Literal["function"]
    function: FunctionDefinition


def parameter_schema(param: PluginParameter) -> dict:
    """JSON schema for a single plugin parameter."""
    schema: dict = {
        "type": param.type or ("array" if param.items else "string"),
        "description": param.description,
    }

    if param.enum:
        schema["enum"] = list(param.enum)

    if schema["type"] == "array":
        items = param.items
        if items is None:
            schema["items"] = {"type": "string"}
        elif not items.properties:
            schema["items"] = {"type": items.type or "string"}
        else:
            schema["items"] = {
                "type": items.type or "object",
                "properties": {
                    prop.name: {"type": prop.type, "description": prop.description}
                    for prop in items.properties
                },
                "required": [prop.name for prop in items.properties if prop.required],
            }

    return schema


def parameters_schema(parameters: list[PluginParameter]) -> FunctionParameters:
    return {
        "type": "object",
        "properties": {p.name: parameter_schema(p) for p in parameters},
        "required": [p.name for p in parameters if p.required],
    }


def plugin_as_tool(plugin: Plugin) -> LlmTool:
    return {
        "type": "function",
        "function": {
            "name": plugin.name,
            "description": plugin.description,
            "parameters": parameters_schema(plugin.parameters),
        },
    }


async def available_tools(registry: PluginRegistry) -> list[dict]:
    """Tool descriptors for every enabled plugin that wants to be serialized."""
    tools: list[dict] = []
    for plugin in registry.ordered():
        if not plugin.enabled:
            continue

        # vendor-specific plugins are handled by the provider strategy
        if not plugin.serialize_in_tools:
            continue

        match plugin.kind:
            case PluginKind.CUSTOM:
                assert isinstance(plugin, CustomToolPlugin)
                custom = await plugin.get_tools()
                if isinstance(custom, list):
                    tools.extend(custom)
                elif custom:
                    tools.append(custom)
            case _:
                tools.append(plugin_as_tool(plugin))
    return tools
