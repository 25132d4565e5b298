"""Shared types for plugin execution and tool validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from llmengine.cancellation import CancellationToken


class ErrorCode:
    UNKNOWN_TOOL = "unknown_tool"
    VALIDATION_DENIED = "validation_denied"
    INVALID_ARGUMENTS = "invalid_arguments"
    CANCELLED = "cancelled"
    NO_RESULT = "no_result"


class ValidationDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ABORT = "abort"


@dataclass
class ValidationResponse:
    decision: ValidationDecision
    reason: str | None = None
    extra: Any = None

    def to_dict(self) -> dict:
        d: dict = {"decision": self.decision.value}
        if self.reason is not None:
            d["reason"] = self.reason
        if self.extra is not None:
            d["extra"] = self.extra
        return d


@dataclass
class PluginExecutionContext:
    """What a plugin sees of the completion that triggered it."""

    model: str
    cancellation: CancellationToken | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancellation is not None and self.cancellation.cancelled


@dataclass
class StatusUpdate:
    status: str
    type: str = field(default="status", init=False)


@dataclass
class ResultUpdate:
    result: Any
    canceled: bool = False
    validation: ValidationResponse | None = None
    type: str = field(default="result", init=False)


PluginExecutionUpdate = Union[StatusUpdate, ResultUpdate]
