"""
Engine configuration.

Every knob lives on a small dataclass section hanging off ``EngineConfig``.
``load_config`` fills them from several sources; a later source wins over an
earlier one:

    built-in defaults
    YAML file
    the selected profile inside that file
    ``LLMENGINE_*`` environment variables
    CLI flags
    per-session ``set_override`` calls
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable

import yaml


@dataclass
class ProviderConfig:
    name: str = "ollama"
    model: str = "llama3.1"
    api_base: str = ""
    # name of the env var holding the key, never the key itself
    api_key_env: str = ""
    timeout_seconds: int = 120
    max_retries: int = 2
    vision_fallback_model: str = ""
    extra: dict = field(default_factory=dict)


@dataclass
class CompletionConfig:
    tools: bool = True
    usage: bool = False
    temperature: float | None = None
    max_tokens: int | None = None
    context_window_size: int | None = None
    max_tool_rounds: int = 20


@dataclass
class PolicyConfig:
    denied_tools: list[str] = field(default_factory=list)
    aborted_tools: list[str] = field(default_factory=list)
    blocked_patterns: list[str] = field(default_factory=list)
    validate_arguments: bool = False

    @property
    def active(self) -> bool:
        """True when any rule would need a validation gate."""
        return any(
            (
                self.denied_tools,
                self.aborted_tools,
                self.blocked_patterns,
                self.validate_arguments,
            )
        )


@dataclass
class PluginsConfig:
    enabled: bool = False
    allow_distributions: list[str] = field(default_factory=list)
    allow_plugins: list[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    level: str = "WARNING"


_SECTIONS: dict[str, type] = {
    "provider": ProviderConfig,
    "completion": CompletionConfig,
    "policy": PolicyConfig,
    "plugins": PluginsConfig,
    "logging": LoggingConfig,
}


@dataclass
class EngineConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    plugins: PluginsConfig = field(default_factory=PluginsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Pin ``section.key`` to *value* for the rest of the session."""
        self._overrides[dotpath] = value
        _assign(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if k != "_overrides"}


def _assign(target: Any, dotpath: str, value: Any) -> None:
    *parents, leaf = dotpath.split(".")
    for name in parents:
        target = getattr(target, name)
    setattr(target, leaf, value)


def _merged(base: dict, overlay: dict) -> dict:
    """Return *base* with *overlay* laid over it; nested mappings merge key by key."""
    out = dict(base)
    for key, value in overlay.items():
        current = out.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            out[key] = _merged(current, value)
        else:
            out[key] = value
    return out


def _section(cls: type, raw: dict | None) -> Any:
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


# -- environment ------------------------------------------------------------

def _truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


_ENV_MAP: dict[str, tuple[str, Callable[[str], Any]]] = {
    "LLMENGINE_PROVIDER": ("provider.name", str),
    "LLMENGINE_MODEL": ("provider.model", str),
    "LLMENGINE_API_BASE": ("provider.api_base", str),
    "LLMENGINE_API_KEY_ENV": ("provider.api_key_env", str),
    "LLMENGINE_TIMEOUT": ("provider.timeout_seconds", int),
    "LLMENGINE_MAX_RETRIES": ("provider.max_retries", int),
    "LLMENGINE_VISION_MODEL": ("provider.vision_fallback_model", str),
    "LLMENGINE_TOOLS": ("completion.tools", _truthy),
    "LLMENGINE_USAGE": ("completion.usage", _truthy),
    "LLMENGINE_TEMPERATURE": ("completion.temperature", float),
    "LLMENGINE_MAX_TOKENS": ("completion.max_tokens", int),
    "LLMENGINE_CONTEXT_WINDOW": ("completion.context_window_size", int),
    "LLMENGINE_MAX_TOOL_ROUNDS": ("completion.max_tool_rounds", int),
    "LLMENGINE_POLICY_DENIED": ("policy.denied_tools", _csv),
    "LLMENGINE_POLICY_ABORTED": ("policy.aborted_tools", _csv),
    "LLMENGINE_POLICY_BLOCKED": ("policy.blocked_patterns", _csv),
    "LLMENGINE_POLICY_VALIDATE_ARGS": ("policy.validate_arguments", _truthy),
    "LLMENGINE_PLUGINS_ENABLED": ("plugins.enabled", _truthy),
    "LLMENGINE_LOG_LEVEL": ("logging.level", str),
}


def _read_yaml(config_path: str | Path | None) -> dict[str, Any]:
    if config_path is None:
        return {}
    path = Path(config_path).expanduser()
    if not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> EngineConfig:
    """
    Assemble an ``EngineConfig``.

    A missing file is not an error; defaults apply.  Unknown keys in a
    section are ignored.  ``cli_overrides`` maps dotpaths to values, and a
    ``None`` value means the flag was not given.
    """
    raw = _read_yaml(config_path)

    overlay = (raw.get("profiles") or {}).get(profile) if profile else None
    if overlay:
        raw = _merged(raw, overlay)

    cfg = EngineConfig(
        profiles=raw.get("profiles") or {},
        **{name: _section(cls, raw.get(name)) for name, cls in _SECTIONS.items()},
    )

    for var, (dotpath, convert) in _ENV_MAP.items():
        if var in os.environ:
            _assign(cfg, dotpath, convert(os.environ[var]))

    for dotpath, value in (cli_overrides or {}).items():
        if value is not None:
            _assign(cfg, dotpath, value)

    return cfg
