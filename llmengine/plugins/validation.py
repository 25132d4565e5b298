"""
Ready-made validation gates.

A validation gate is any async callable ``(context, tool, args)`` returning a
``ValidationResponse``; pass one as ``CompletionOptions.tool_validation``.
"""

from __future__ import annotations

import json
import re
from typing import Any

import jsonschema

from llmengine.llm.types import ValidationCallback
from llmengine.plugins.base import Plugin, PluginKind
from llmengine.plugins.registry import PluginRegistry
from llmengine.plugins.schema import parameters_schema
from llmengine.types import (
    ErrorCode,
    PluginExecutionContext,
    ValidationDecision,
    ValidationResponse,
)


def normalize_schema(schema: dict) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("additionalProperties", False)
    return s


class ArgumentValidator:
    @staticmethod
    def validate(plugin: Plugin, arguments: Any) -> tuple[bool, str | None]:
        # multi-tool and custom plugins describe their own arguments
        if plugin.kind is not PluginKind.SIMPLE:
            return True, None
        try:
            jsonschema.validate(
                instance=arguments,
                schema=normalize_schema(dict(parameters_schema(plugin.parameters))),
            )
            return True, None
        except jsonschema.ValidationError as e:
            return False, str(e.message)


class PolicyGate:
    """
    Static allow/deny/abort policy.

    ``aborted_tools`` terminate the tool round, ``denied_tools`` and
    ``blocked_patterns`` (regexes matched against the JSON-encoded arguments)
    only refuse the call.  With ``validate_arguments`` set, arguments that do
    not match the plugin schema are refused as well.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        *,
        denied_tools: list[str] | None = None,
        aborted_tools: list[str] | None = None,
        blocked_patterns: list[str] | None = None,
        validate_arguments: bool = False,
    ):
        self.registry = registry
        self.denied_tools = set(denied_tools or [])
        self.aborted_tools = set(aborted_tools or [])
        self.blocked_patterns = [re.compile(p) for p in (blocked_patterns or [])]
        self.validate_arguments = validate_arguments

    def check(self, tool: str, args: Any) -> ValidationResponse:
        if tool in self.aborted_tools:
            return ValidationResponse(ValidationDecision.ABORT, f"tool_aborted:{tool}")

        if tool in self.denied_tools:
            return ValidationResponse(ValidationDecision.DENY, f"tool_denied:{tool}")

        if self.blocked_patterns:
            blob = json.dumps(args, sort_keys=True, default=str)
            for rx in self.blocked_patterns:
                if rx.search(blob):
                    return ValidationResponse(ValidationDecision.DENY, "blocked_pattern")

        if self.validate_arguments:
            plugin = self.registry.get(tool)
            if plugin is not None:
                ok, error = ArgumentValidator.validate(plugin, args)
                if not ok:
                    return ValidationResponse(
                        ValidationDecision.DENY, f"{ErrorCode.INVALID_ARGUMENTS}: {error}"
                    )

        return ValidationResponse(ValidationDecision.ALLOW)

    async def __call__(
        self, context: PluginExecutionContext, tool: str, args: Any
    ) -> ValidationResponse:
        return self.check(tool, args)


def chain_gates(*gates: ValidationCallback) -> ValidationCallback:
    """Combine gates; the first decision other than ``allow`` wins."""

    async def gate(context: PluginExecutionContext, tool: str, args: Any) -> ValidationResponse:
        for g in gates:
            response = await g(context, tool, args)
            if response.decision is not ValidationDecision.ALLOW:
                return response
        return ValidationResponse(ValidationDecision.ALLOW)

    return gate
