"""Tests for the llme CLI."""

from __future__ import annotations

import pytest
from rich.console import Console
from typer.testing import CliRunner

from llmengine.cli.app import app
from llmengine.cli.output import OutputFormatter
from llmengine.llm.types import (
    ContentChunk,
    LlmUsage,
    ToolAbortChunk,
    ToolChunk,
    ToolChunkCall,
    ToolState,
    UsageChunk,
)
from llmengine.types import ValidationDecision, ValidationResponse
from tests.mock_plugins import MathPlugin, SearchPlugin

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for key in ("LLMENGINE_PROVIDER", "LLMENGINE_MODEL"):
        monkeypatch.delenv(key, raising=False)


class TestCommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "llmengine v" in result.stdout

    def test_config_validate_defaults(self):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert "Config is valid" in result.stdout
        assert "ollama" in result.stdout

    def test_config_validate_unknown_provider(self, tmp_path):
        (tmp_path / "llmengine.yaml").write_text("provider:\n  name: pigeon\n")
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 1
        assert "pigeon" in result.stdout

    def test_config_show(self, tmp_path):
        (tmp_path / "llmengine.yaml").write_text("provider:\n  model: tiny\n")
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "tiny" in result.stdout


class TestOutputFormatter:
    def _formatter(self):
        console = Console(record=True, width=120)
        return OutputFormatter(console), console

    def test_renders_stream(self):
        fmt, console = self._formatter()
        chunks = [
            ContentChunk(type="reasoning", text="pondering"),
            ContentChunk(type="content", text="Hello"),
            ToolChunk(
                id="0",
                name="search",
                state=ToolState.COMPLETED,
                status="Found 3 hits",
                call=ToolChunkCall(params={"q": "x"}, result={"hits": 3}),
                done=True,
            ),
            ToolAbortChunk(
                name="shell",
                params={},
                reason=ValidationResponse(ValidationDecision.ABORT, "tool_aborted:shell"),
            ),
            ContentChunk(type="content", text="", done=True),
            UsageChunk(usage=LlmUsage(prompt_tokens=3, completion_tokens=4)),
        ]
        for chunk in chunks:
            fmt.render_chunk(chunk)

        out = console.export_text()
        assert "pondering" in out
        assert "Hello" in out
        assert "Found 3 hits" in out
        assert '{"hits": 3}' in out
        assert "tool_aborted:shell" in out
        assert "7" in out

    def test_plugin_list(self):
        fmt, console = self._formatter()
        fmt.format_plugin_list([SearchPlugin(), MathPlugin()])
        out = console.export_text()
        assert "search" in out
        assert "multi_tool" in out

    def test_empty_model_list(self):
        fmt, console = self._formatter()
        fmt.format_model_list("ollama", [])
        assert "No models reported by ollama" in console.export_text()
