from __future__ import annotations

import inspect
import logging
from importlib.metadata import entry_points

from llmengine.plugins.base import MultiToolPlugin, Plugin, PluginKind

logger = logging.getLogger(__name__)


class PluginRegistry:
    """Plugins keyed by name.  Adding a plugin replaces any namesake."""

    def __init__(self):
        self._plugins: dict[str, Plugin] = {}

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, name: str) -> bool:
        return name in self._plugins

    def add(self, plugin: Plugin) -> None:
        # Re-adding moves the plugin to the end, like a fresh registration.
        self._plugins.pop(plugin.name, None)
        self._plugins[plugin.name] = plugin

    def remove(self, name: str) -> Plugin | None:
        return self._plugins.pop(name, None)

    def clear(self) -> None:
        self._plugins.clear()

    def get(self, name: str) -> Plugin | None:
        return self._plugins.get(name)

    def require(self, name: str) -> Plugin:
        p = self.get(name)
        if not p:
            raise KeyError(name)
        return p

    def list(self) -> list[Plugin]:
        return sorted(self._plugins.values(), key=lambda p: p.name)

    def ordered(self) -> list[Plugin]:
        """Plugins in registration order."""
        return list(self._plugins.values())

    def plugin_for_tool(self, tool: str) -> Plugin | None:
        """
        Resolve *tool* to its owning plugin.

        An exact plugin name wins; otherwise the first multi-tool plugin
        (in registration order) that handles the name.
        """
        plugin = self._plugins.get(tool)
        if plugin is not None:
            return plugin
        for candidate in self._plugins.values():
            match candidate.kind:
                case PluginKind.MULTI_TOOL:
                    assert isinstance(candidate, MultiToolPlugin)
                    if candidate.handles_tool(tool):
                        return candidate
                case _:
                    continue
        return None

    def load_entry_points(
        self,
        *,
        enabled: bool,
        group: str = "llmengine.plugins",
        allow_distributions: set[str] | None = None,
        allow_plugins: set[str] | None = None,
        **injectables: object,
    ) -> int:
        """Load plugin classes advertised by installed distributions.

        Keyword arguments are injected into a plugin constructor when it
        declares a parameter of the same name.
        """
        if not enabled:
            return 0
        loaded = 0
        for ep in entry_points(group=group):
            dist = getattr(ep, "dist", None)
            dist_name = getattr(dist, "name", None)
            if allow_distributions and dist_name and dist_name not in allow_distributions:
                continue
            if allow_plugins and ep.name not in allow_plugins:
                continue
            plugin_cls = ep.load()
            sig = inspect.signature(plugin_cls)
            kwargs = {k: v for k, v in injectables.items() if k in sig.parameters}
            self.add(plugin_cls(**kwargs))
            logger.info("Loaded plugin %s from %s", ep.name, dist_name or "?")
            loaded += 1
        return loaded
