"""
Main CLI application for llmengine.

Usage:
    llme chat PROMPT [--provider NAME] [--model ID] [--profile NAME] [--image PATH]
    llme models list
    llme plugins list
    llme config show|validate
    llme version
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from llmengine.config import EngineConfig, load_config

app = typer.Typer(name="llme", help="llmengine - provider-agnostic completion engine")
models_app = typer.Typer(help="Model catalog")
plugins_app = typer.Typer(help="Plugin management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(models_app, name="models")
app.add_typer(plugins_app, name="plugins")
app.add_typer(config_app, name="config")

console = Console()

__version__ = "0.1.0"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "llmengine.yaml",
        Path.cwd() / "llmengine.yml",
        Path.home() / ".config" / "llmengine" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _setup_logging(cfg: EngineConfig, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, cfg.logging.level.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _load(
    profile: str | None = None,
    provider: str | None = None,
    model: str | None = None,
) -> EngineConfig:
    return load_config(
        _get_config_path(),
        profile=profile,
        cli_overrides={"provider.name": provider, "provider.model": model},
    )


def _image_attachment(path: Path):
    from llmengine.llm.types import Attachment

    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    return Attachment(
        content=base64.b64encode(path.read_bytes()).decode("ascii"),
        mime_type=mime_type,
        url=str(path),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    prompt: str = typer.Argument(..., help="User prompt"),
    provider: Optional[str] = typer.Option(None, help="Provider name"),
    model: Optional[str] = typer.Option(None, help="Model id"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    system: Optional[str] = typer.Option(None, help="System instructions"),
    image: Optional[List[Path]] = typer.Option(None, "--image", help="Attach an image", exists=True),
    no_tools: bool = typer.Option(False, "--no-tools", help="Do not expose plugins as tools"),
    usage: bool = typer.Option(False, "--usage", help="Report token usage"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Stream a completion for PROMPT.  Ctrl-C cancels it."""
    cfg = _load(profile, provider, model)
    _setup_logging(cfg, verbose)

    async def _run():
        from llmengine.cancellation import CancellationToken
        from llmengine.cli.output import OutputFormatter
        from llmengine.errors import LlmEngineError
        from llmengine.llm.router import build_engine, build_options
        from llmengine.llm.types import Message

        try:
            engine = build_engine(cfg)
        except LlmEngineError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

        token = CancellationToken()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
        except NotImplementedError:
            pass

        thread: list[Message] = []
        if system:
            thread.append(Message(role="system", content=system))
        thread.append(
            Message(
                role="user",
                content=prompt,
                attachments=[_image_attachment(p) for p in image or []],
            )
        )

        opts = build_options(cfg, engine, cancellation=token)
        if no_tools:
            opts.tools = False
        if usage:
            opts.usage = True

        formatter = OutputFormatter(console)
        try:
            async for chunk in engine.generate(cfg.provider.model, thread, opts):
                formatter.render_chunk(chunk)
        except LlmEngineError as e:
            console.print(f"\n[red]Error:[/red] {e}")
            raise typer.Exit(1)
        finally:
            await engine.aclose()

        if token.cancelled:
            console.print("\n[yellow]Cancelled.[/yellow]")

    asyncio.run(_run())


@models_app.command("list")
def models_list(
    provider: Optional[str] = typer.Option(None, help="Provider name"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """List models reported by the provider."""
    cfg = _load(profile, provider)
    _setup_logging(cfg)

    async def _run():
        from llmengine.cli.output import OutputFormatter
        from llmengine.llm.router import build_engine

        engine = build_engine(cfg)
        try:
            models = await engine.list_models()
        except Exception as e:
            console.print(f"[red]Could not list models:[/red] {e}")
            raise typer.Exit(1)
        finally:
            await engine.aclose()
        OutputFormatter(console).format_model_list(engine.name, models)

    asyncio.run(_run())


@plugins_app.command("list")
def plugins_list():
    """List plugins advertised through entry points."""
    from llmengine.cli.output import OutputFormatter
    from llmengine.plugins.registry import PluginRegistry

    cfg = _load()
    _setup_logging(cfg)

    registry = PluginRegistry()
    registry.load_entry_points(
        enabled=True,
        allow_distributions=set(cfg.plugins.allow_distributions) or None,
        allow_plugins=set(cfg.plugins.allow_plugins) or None,
    )
    OutputFormatter(console).format_plugin_list(registry.list())


@config_app.command("show")
def config_show(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Show effective config."""
    from llmengine.cli.output import OutputFormatter

    cfg = _load(profile)
    OutputFormatter(console).format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Validate config and show any issues."""
    from llmengine.llm.router import STRATEGIES

    config_path = _get_config_path()
    try:
        cfg = _load(profile)
    except Exception as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    if cfg.provider.name not in STRATEGIES:
        console.print(
            f"[red]Config validation failed:[/red] unknown provider {cfg.provider.name!r}"
        )
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Provider: {cfg.provider.name} ({cfg.provider.model})")
    console.print(f"  Max tool rounds: {cfg.completion.max_tool_rounds}")
    console.print(f"  Plugins enabled: {cfg.plugins.enabled}")


@app.command()
def version():
    """Show version."""
    console.print(f"llmengine v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
