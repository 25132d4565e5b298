"""
Cooperative cancellation.

A ``CancellationToken`` is created by the caller, passed in the completion
options and polled at every suspension point of a generation.  Nothing is
interrupted preemptively: the stream loop and the tool orchestrator check
``cancelled`` and wind down on their own.
"""

from __future__ import annotations

import asyncio

from llmengine.errors import OperationCanceledError


class CancellationToken:
    """A one-shot, shareable cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation.  Only the first reason is kept."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCanceledError(self._reason or "Operation cancelled")
