"""
Engine router -- manages several provider engines and picks the active one.

The router is the entry point for callers that switch providers at runtime.
It keeps one ``LlmEngine`` per provider name, forwards completions to the
active one and broadcasts plugin changes to all of them.

``build_engine`` turns an ``EngineConfig`` into a ready engine.
"""

from __future__ import annotations

import logging
import os
from typing import AsyncIterator, Callable

from llmengine.config import EngineConfig, ProviderConfig
from llmengine.errors import ProviderNotFoundError
from llmengine.llm.providers.base import ProviderStrategy
from llmengine.llm.providers.ollama import OllamaStrategy
from llmengine.llm.providers.openai_compat import OpenAICompatStrategy
from llmengine.llm.types import (
    ChatModel,
    CompletionOptions,
    LlmChunk,
    LlmResponse,
    Message,
)
from llmengine.orchestrator.core import LlmEngine
from llmengine.plugins.base import Plugin
from llmengine.plugins.registry import PluginRegistry
from llmengine.plugins.validation import PolicyGate

logger = logging.getLogger(__name__)


class EngineRouter:
    """
    Routes completion requests to a named engine.
    """

    def __init__(self) -> None:
        self._engines: dict[str, LlmEngine] = {}
        self._active: str | None = None

    # ------------------------------------------------------------------
    # Engine management
    # ------------------------------------------------------------------

    def register(self, name: str, engine: LlmEngine) -> None:
        """Register an engine under *name*.  Overwrites any existing entry."""
        self._engines[name] = engine
        if self._active is None:
            self._active = name

    def set_active(self, name: str) -> None:
        """
        Switch the active engine.

        Raises ``ProviderNotFoundError`` if *name* has not been registered.
        """
        if name not in self._engines:
            raise ProviderNotFoundError(
                f"Unknown provider {name!r}. Registered: {list(self._engines)}"
            )
        self._active = name

    @property
    def active_name(self) -> str | None:
        return self._active

    @property
    def active(self) -> LlmEngine:
        """
        Return the active engine.

        Raises ``ProviderNotFoundError`` if nothing is registered.
        """
        if self._active is None or self._active not in self._engines:
            raise ProviderNotFoundError("No active LLM provider")
        return self._engines[self._active]

    def engine(self, name: str) -> LlmEngine:
        try:
            return self._engines[name]
        except KeyError:
            raise ProviderNotFoundError(
                f"Unknown provider {name!r}. Registered: {list(self._engines)}"
            ) from None

    @property
    def provider_names(self) -> list[str]:
        return list(self._engines)

    # ------------------------------------------------------------------
    # Plugins
    # ------------------------------------------------------------------

    def add_plugin(self, plugin: Plugin) -> None:
        for engine in self._engines.values():
            engine.add_plugin(plugin)

    def clear_plugins(self) -> None:
        for engine in self._engines.values():
            engine.clear_plugins()

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete(
        self,
        model: ChatModel | str,
        thread: list[Message] | str,
        opts: CompletionOptions | None = None,
    ) -> LlmResponse:
        return await self.active.complete(model, thread, opts)

    async def generate(
        self,
        model: ChatModel | str,
        thread: list[Message] | str,
        opts: CompletionOptions | None = None,
    ) -> AsyncIterator[LlmChunk]:
        async for chunk in self.active.generate(model, thread, opts):
            yield chunk

    async def aclose(self) -> None:
        for name, engine in self._engines.items():
            try:
                await engine.aclose()
            except Exception:
                logger.exception("Failed to close provider %s", name)


# ---------------------------------------------------------------------------
# Construction from config
# ---------------------------------------------------------------------------

def _api_key(cfg: ProviderConfig) -> str:
    return os.environ.get(cfg.api_key_env, "") if cfg.api_key_env else ""


def _ollama(cfg: ProviderConfig) -> ProviderStrategy:
    return OllamaStrategy(
        url=cfg.api_base or "http://localhost:11434",
        timeout=float(cfg.timeout_seconds),
    )


def _openai(cfg: ProviderConfig) -> ProviderStrategy:
    return OpenAICompatStrategy(
        url=cfg.api_base or "https://api.openai.com/v1",
        api_key=_api_key(cfg),
        timeout=float(cfg.timeout_seconds),
        max_retries=cfg.max_retries,
        provider_name=cfg.name,
    )


STRATEGIES: dict[str, Callable[[ProviderConfig], ProviderStrategy]] = {
    "ollama": _ollama,
    "openai": _openai,
    "openai_compat": _openai,
    "lmstudio": _openai,
    "vllm": _openai,
}


def build_strategy(cfg: ProviderConfig) -> ProviderStrategy:
    factory = STRATEGIES.get(cfg.name)
    if factory is None:
        raise ProviderNotFoundError(
            f"Unknown provider {cfg.name!r}. Available: {sorted(STRATEGIES)}"
        )
    return factory(cfg)


def build_engine(
    config: EngineConfig,
    registry: PluginRegistry | None = None,
    strategy: ProviderStrategy | None = None,
) -> LlmEngine:
    """Build an engine for ``config.provider``, loading entry-point plugins if enabled."""
    registry = registry if registry is not None else PluginRegistry()
    if config.plugins.enabled:
        registry.load_entry_points(
            enabled=True,
            allow_distributions=set(config.plugins.allow_distributions) or None,
            allow_plugins=set(config.plugins.allow_plugins) or None,
        )
    engine = LlmEngine(
        strategy or build_strategy(config.provider),
        registry=registry,
        max_tool_rounds=config.completion.max_tool_rounds,
    )
    logger.info("Built %s engine with %d plugins", engine.name, len(registry))
    return engine


def build_options(config: EngineConfig, engine: LlmEngine, **overrides) -> CompletionOptions:
    """Completion options from the ``completion`` and ``policy`` sections."""
    c = config.completion
    opts = CompletionOptions(
        tools=c.tools,
        usage=c.usage,
        temperature=c.temperature,
        max_tokens=c.max_tokens,
        context_window_size=c.context_window_size,
    )
    if config.provider.vision_fallback_model:
        opts.vision_fallback_model = engine.build_model(config.provider.vision_fallback_model)
    if config.policy.active:
        opts.tool_validation = PolicyGate(
            engine.registry,
            denied_tools=config.policy.denied_tools,
            aborted_tools=config.policy.aborted_tools,
            blocked_patterns=config.policy.blocked_patterns,
            validate_arguments=config.policy.validate_arguments,
        )
    for key, value in overrides.items():
        setattr(opts, key, value)
    return opts
