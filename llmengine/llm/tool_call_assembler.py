"""
Stitches fragmented tool-call deltas back into whole ``ToolCall`` objects.

OpenAI-style endpoints stream a tool call as a run of ``RawToolDelta``
pieces sharing a ``call_index``: the vendor id and function name usually
arrive first, the JSON arguments trickle in after.  Nothing on the wire
closes a single call, so every open call is closed together by ``flush()``
once the choice reports a ``finish_reason``.  Arguments that do not parse
as JSON close the call without emitting it; the reason lands in ``errors``
for the strategy to report as an error chunk.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from llmengine.llm.types import RawToolDelta, ToolCall


@dataclass
class _PartialCall:
    index: int
    call_id: str | None = None
    name_parts: list[str] = field(default_factory=list)
    arg_parts: list[str] = field(default_factory=list)

    def absorb(self, delta: RawToolDelta) -> None:
        # vendors repeat the id on later fragments; the first one sticks
        if self.call_id is None and delta.id:
            self.call_id = delta.id
        if delta.name_delta:
            self.name_parts.append(delta.name_delta)
        if delta.args_delta:
            self.arg_parts.append(delta.args_delta)

    def to_tool_call(self) -> ToolCall:
        """Raise ``ValueError`` when the collected arguments are not JSON."""
        arguments = json.loads("".join(self.arg_parts) or "{}")
        return ToolCall(
            id=self.call_id or f"call_{self.index}",
            function="".join(self.name_parts).strip(),
            args=json.dumps(arguments),
        )


class ToolCallAssembler:
    """Per-stream buffer of open tool calls, keyed by ``call_index``."""

    def __init__(self) -> None:
        self._open: dict[int, _PartialCall] = {}
        self.errors: list[str] = []

    @property
    def pending(self) -> bool:
        return len(self._open) > 0

    def feed(self, delta: RawToolDelta) -> None:
        """Merge one fragment into its call."""
        partial = self._open.get(delta.call_index)
        if partial is None:
            partial = self._open[delta.call_index] = _PartialCall(index=delta.call_index)
        partial.absorb(delta)

    def flush(self) -> list[ToolCall]:
        """Close every open call, lowest ``call_index`` first."""
        finished: list[ToolCall] = []
        for index in sorted(self._open):
            partial = self._open.pop(index)
            try:
                finished.append(partial.to_tool_call())
            except ValueError as exc:
                self.errors.append(f"tool_call_json_parse_failed idx={index} err={exc}")
        return finished
