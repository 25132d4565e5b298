"""Tests for configuration loading."""

from __future__ import annotations

import os

import pytest

from llmengine.config import EngineConfig, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("LLMENGINE_"):
            monkeypatch.delenv(key)


class TestDefaults:
    def test_defaults(self):
        cfg = load_config(None)
        assert cfg.provider.name == "ollama"
        assert cfg.completion.max_tool_rounds == 20
        assert cfg.completion.tools is True
        assert not cfg.policy.active
        assert cfg.logging.level == "WARNING"

    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nope.yaml")
        assert cfg.provider.model == "llama3.1"


class TestLayering:
    def test_yaml_file(self, tmp_path):
        path = tmp_path / "llmengine.yaml"
        path.write_text(
            "provider:\n"
            "  name: openai\n"
            "  model: gpt-x\n"
            "  bogus: ignored\n"
            "policy:\n"
            "  denied_tools: [shell]\n"
        )
        cfg = load_config(path)
        assert cfg.provider.name == "openai"
        assert cfg.provider.model == "gpt-x"
        assert cfg.policy.denied_tools == ["shell"]
        assert cfg.policy.active

    def test_profile_overlay(self, tmp_path):
        path = tmp_path / "llmengine.yaml"
        path.write_text(
            "provider:\n"
            "  model: base\n"
            "  timeout_seconds: 30\n"
            "profiles:\n"
            "  fast:\n"
            "    provider:\n"
            "      model: tiny\n"
        )
        cfg = load_config(path, profile="fast")
        assert cfg.provider.model == "tiny"
        assert cfg.provider.timeout_seconds == 30
        assert "fast" in cfg.profiles

    def test_env_beats_file(self, tmp_path, monkeypatch):
        path = tmp_path / "llmengine.yaml"
        path.write_text("provider:\n  model: from-file\n")
        monkeypatch.setenv("LLMENGINE_MODEL", "from-env")
        monkeypatch.setenv("LLMENGINE_USAGE", "yes")
        monkeypatch.setenv("LLMENGINE_TEMPERATURE", "0.5")
        monkeypatch.setenv("LLMENGINE_POLICY_DENIED", "shell, rm")

        cfg = load_config(path)
        assert cfg.provider.model == "from-env"
        assert cfg.completion.usage is True
        assert cfg.completion.temperature == 0.5
        assert cfg.policy.denied_tools == ["shell", "rm"]

    def test_cli_beats_env_and_none_is_skipped(self, monkeypatch):
        monkeypatch.setenv("LLMENGINE_PROVIDER", "openai")
        cfg = load_config(
            None, cli_overrides={"provider.name": "ollama", "provider.model": None}
        )
        assert cfg.provider.name == "ollama"
        assert cfg.provider.model == "llama3.1"


class TestOverrides:
    def test_session_override(self):
        cfg = EngineConfig()
        cfg.set_override("completion.max_tool_rounds", 3)
        assert cfg.completion.max_tool_rounds == 3
        assert cfg.get_override("completion.max_tool_rounds") == 3

    def test_to_dict_hides_overrides(self):
        cfg = EngineConfig()
        cfg.set_override("provider.model", "x")
        d = cfg.to_dict()
        assert "_overrides" not in d
        assert d["provider"]["model"] == "x"
