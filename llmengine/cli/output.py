"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from llmengine.llm.types import (
    ContentChunk,
    LlmChunk,
    LlmUsage,
    MessageIdChunk,
    ToolAbortChunk,
    ToolChunk,
    ToolState,
    UsageChunk,
)
from llmengine.plugins.base import Plugin

STATE_COLORS = {
    ToolState.PREPARING: "dim",
    ToolState.RUNNING: "yellow",
    ToolState.COMPLETED: "green",
    ToolState.CANCELED: "magenta",
    ToolState.ERROR: "red",
}


class OutputFormatter:
    """Rich-based output formatting for the llme CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self._in_reasoning = False

    # ------------------------------------------------------------------
    # Streaming chunks
    # ------------------------------------------------------------------

    def render_chunk(self, chunk: LlmChunk) -> None:
        match chunk:
            case ContentChunk(type="reasoning", text=text):
                self._in_reasoning = True
                self.console.print(Text(text, style="dim italic"), end="")
            case ContentChunk(text=text, done=done):
                if self._in_reasoning and text:
                    self.console.print()
                    self._in_reasoning = False
                self.console.print(text, end="", markup=False, highlight=False)
                if done:
                    self.console.print()
            case ToolChunk():
                self.format_tool_chunk(chunk)
            case ToolAbortChunk(name=name, reason=reason):
                self.console.print(
                    f"\n[bold red]Aborted[/bold red] {name}: {escape(reason.reason or 'no reason given')}"
                )
            case UsageChunk(usage=usage):
                self.format_usage(usage)
            case MessageIdChunk():
                pass

    def format_tool_chunk(self, chunk: ToolChunk) -> None:
        color = STATE_COLORS.get(chunk.state, "white")
        line = f"  [{color}]{chunk.state.value:>9s}[/{color}] [cyan]{chunk.name}[/cyan]"
        if chunk.status:
            line += f"  {escape(chunk.status)}"
        self.console.print(line)
        if chunk.done and chunk.call is not None and chunk.call.result is not None:
            result = json.dumps(chunk.call.result, default=str)
            self.console.print(f"            [dim]{escape(result[:200])}[/dim]")

    def format_usage(self, usage: LlmUsage) -> None:
        table = Table(title="Usage")
        table.add_column("Prompt", justify="right")
        table.add_column("Completion", justify="right")
        table.add_column("Total", justify="right")
        table.add_row(
            str(usage.prompt_tokens),
            str(usage.completion_tokens),
            str(usage.prompt_tokens + usage.completion_tokens),
        )
        self.console.print(table)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def format_plugin_list(self, plugins: list[Plugin]) -> None:
        if not plugins:
            self.console.print("[dim]No plugins registered.[/dim]")
            return

        table = Table(title="Plugins", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Kind", no_wrap=True)
        table.add_column("Enabled", no_wrap=True)
        table.add_column("Description")

        for p in plugins:
            enabled = Text("yes", style="green") if p.enabled else Text("no", style="red")
            table.add_row(p.name, p.kind.value, enabled, p.description)

        self.console.print(table)

    def format_model_list(self, provider: str, models: list[str]) -> None:
        if not models:
            self.console.print(f"[dim]No models reported by {provider}.[/dim]")
            return

        table = Table(title=f"Models ({provider})")
        table.add_column("ID", style="cyan", no_wrap=True)
        for m in models:
            table.add_row(m)
        self.console.print(table)

    def format_config(self, config: dict[str, Any]) -> None:
        json_str = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(json_str, "json", theme="monokai"))
