"""Plugins -- tool variants, registry, schema adapter and validation gates."""

from llmengine.plugins.base import (
    CustomToolPlugin,
    MultiToolPlugin,
    Plugin,
    PluginArrayItem,
    PluginArrayItems,
    PluginKind,
    PluginParameter,
)
from llmengine.plugins.registry import PluginRegistry
from llmengine.plugins.schema import available_tools, plugin_as_tool
from llmengine.plugins.validation import ArgumentValidator, PolicyGate, chain_gates

__all__ = [
    "ArgumentValidator",
    "CustomToolPlugin",
    "MultiToolPlugin",
    "Plugin",
    "PluginArrayItem",
    "PluginArrayItems",
    "PluginKind",
    "PluginParameter",
    "PluginRegistry",
    "PolicyGate",
    "available_tools",
    "chain_gates",
    "plugin_as_tool",
]
