"""
OpenAI-compatible chat-completion strategy.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.
Tool calls stream in as fragments and are buffered by a
``ToolCallAssembler`` until ``finish_reason`` arrives.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from llmengine.llm.providers.base import ProviderReply, ProviderStrategy
from llmengine.llm.tool_call_assembler import ToolCallAssembler
from llmengine.llm.types import (
    ChatModel,
    CompletionOptions,
    CompletionPayload,
    ContentChunk,
    LlmChunk,
    LlmUsage,
    MessageIdChunk,
    ModelCapabilities,
    NativeStream,
    RawToolDelta,
    StreamingContext,
    ToolCall,
    ToolChunk,
    ToolState,
    UsageChunk,
)

logger = logging.getLogger(__name__)


def _tool_choice_wire(opts: CompletionOptions) -> str | dict | None:
    choice = opts.tool_choice
    if choice is None:
        return None
    if choice.type == "tool":
        return {"type": "function", "function": {"name": choice.name}}
    return choice.type


def _wire_tool_calls(calls: list[ToolCall]) -> list[dict]:
    return [
        {
            "id": c.id,
            "type": "function",
            "function": {"name": c.function, "arguments": c.args},
        }
        for c in calls
    ]


class OpenAICompatStrategy(ProviderStrategy):
    """
    Strategy for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"``.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    timeout:
        HTTP request timeout in seconds.
    max_retries:
        Number of automatic retries on transient HTTP errors (5xx, 429).
    capabilities:
        Capabilities assumed for every model.
    model_capabilities_overrides:
        Per-model capabilities, keyed by model id.
    provider_name:
        Provider id reported by ``name`` (e.g. ``"deepseek"``).
    client:
        Pre-built ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        api_key: str = "",
        timeout: float = 120.0,
        max_retries: int = 2,
        capabilities: ModelCapabilities | None = None,
        model_capabilities_overrides: dict[str, ModelCapabilities] | None = None,
        provider_name: str = "openai",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self._api_key = api_key
        self._max_retries = max_retries
        self._capabilities = capabilities or ModelCapabilities(tools=True, vision=True)
        self._overrides = dict(model_capabilities_overrides or {})
        self._provider_name = provider_name
        self._client = client or httpx.AsyncClient(base_url=url.rstrip("/"), timeout=timeout)

    # ------------------------------------------------------------------
    # Identity & catalog
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._provider_name

    def model_capabilities(self, model_id: str) -> ModelCapabilities:
        return self._overrides.get(model_id, self._capabilities)

    async def list_models(self) -> list[str]:
        resp = await self._client.get("/models", headers=self._build_headers())
        resp.raise_for_status()
        return [m["id"] for m in resp.json().get("data", [])]

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def build_request_options(
        self,
        model: ChatModel,
        thread: list[CompletionPayload],
        opts: CompletionOptions,
    ) -> dict:
        body: dict = {
            "model": model.id,
            "messages": [p.to_dict() for p in thread],
        }
        if opts.max_tokens:
            body["max_tokens"] = opts.max_tokens
        if opts.temperature is not None:
            body["temperature"] = opts.temperature
        if opts.top_p is not None:
            body["top_p"] = opts.top_p
        if opts.reasoning_effort and model.capabilities.reasoning:
            body["reasoning_effort"] = opts.reasoning_effort
        if opts.structured_output is not None:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": opts.structured_output.name,
                    "schema": opts.structured_output.schema,
                },
            }
        body.update(opts.custom_opts)
        return body

    async def _request_body(
        self,
        model: ChatModel,
        thread: list[CompletionPayload],
        opts: CompletionOptions,
        stream: bool,
    ) -> dict:
        body = self.build_request_options(model, thread, opts)
        tools = await self.tool_definitions(model, opts)
        if tools:
            body["tools"] = tools
            choice = _tool_choice_wire(opts)
            if choice is not None:
                body["tool_choice"] = choice
        body["stream"] = stream
        if stream and opts.usage:
            body["stream_options"] = {"include_usage": True}
        logger.info(
            "[%s] prompting model %s tools=%d messages=%d",
            self.name,
            model.id,
            len(tools),
            len(body["messages"]),
        )
        return body

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def start_stream(self, context: StreamingContext) -> NativeStream:
        context.scratch["assembler"] = ToolCallAssembler()
        context.scratch["text"] = []
        body = await self._request_body(context.model, context.thread, context.opts, stream=True)
        return NativeStream(self._stream_request(body))

    async def _stream_request(self, body: dict) -> AsyncIterator[dict]:
        last_error: Exception | None = None
        for attempt in range(1 + self._max_retries):
            try:
                async with self._client.stream(
                    "POST", "/chat/completions", json=body, headers=self._build_headers()
                ) as response:
                    if response.status_code == 429 or response.status_code >= 500:
                        # Retryable -- read body so the connection is released.
                        await response.aread()
                        last_error = httpx.HTTPStatusError(
                            f"HTTP {response.status_code}",
                            request=response.request,
                            response=response,
                        )
                        continue

                    response.raise_for_status()

                    async for data in self._parse_sse_stream(response):
                        yield data
                    return
            except httpx.TransportError as exc:
                last_error = exc
                if attempt < self._max_retries:
                    continue
                raise

        if last_error is not None:
            raise last_error

    async def _parse_sse_stream(self, response: httpx.Response) -> AsyncIterator[dict]:
        """
        Parse Server-Sent Events from the response.

        Each SSE event has the form ``data: {json}``; the sentinel
        ``data: [DONE]`` terminates the stream.
        """
        async for line in response.aiter_lines():
            line = line.rstrip("\r")
            if not line.startswith("data:"):
                continue

            data_str = line[len("data:"):].strip()
            if data_str == "[DONE]":
                return

            try:
                yield json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse SSE data: %s", data_str[:200])

    async def normalize_chunk(
        self, chunk: dict, context: StreamingContext
    ) -> AsyncIterator[LlmChunk]:
        scratch = context.scratch
        assembler: ToolCallAssembler = scratch.setdefault("assembler", ToolCallAssembler())
        text_parts: list[str] = scratch.setdefault("text", [])

        if chunk.get("id") and scratch.get("message_id") != chunk["id"]:
            scratch["message_id"] = chunk["id"]
            yield MessageIdChunk(id=chunk["id"])

        usage = chunk.get("usage")
        if usage:
            context.usage.add(usage.get("prompt_tokens"), usage.get("completion_tokens"))
            if usage.get("prompt_tokens_details"):
                context.usage.prompt_tokens_details = usage["prompt_tokens_details"]
            if usage.get("completion_tokens_details"):
                context.usage.completion_tokens_details = usage["completion_tokens_details"]
            if context.opts.usage:
                yield UsageChunk(usage=context.usage)

        choices = chunk.get("choices") or []
        if not choices:
            return

        choice = choices[0]
        delta = choice.get("delta") or {}
        finish_reason = choice.get("finish_reason")

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if reasoning:
            yield ContentChunk(type="reasoning", text=reasoning)

        text = delta.get("content") or ""
        if text:
            text_parts.append(text)
            yield ContentChunk(type="content", text=text)

        for raw in delta.get("tool_calls") or []:
            func = raw.get("function") or {}
            assembler.feed(
                RawToolDelta(
                    call_index=raw.get("index", 0),
                    id=raw.get("id"),
                    name_delta=func.get("name") or "",
                    args_delta=func.get("arguments") or "",
                )
            )

        if finish_reason is None:
            return

        if not assembler.pending:
            yield ContentChunk(type="content", text="", done=True)
            return

        calls = assembler.flush()
        for error in assembler.errors:
            logger.warning("[%s] tool-call assembly error: %s", self.name, error)
            yield ToolChunk(
                id=f"{len(context.tool_calls)}",
                name="",
                state=ToolState.ERROR,
                status=error,
                done=True,
            )
        assembler.errors.clear()
        if not calls:
            yield ContentChunk(type="content", text="", done=True)
            return

        carrier = CompletionPayload(
            role="assistant",
            content="".join(text_parts),
            tool_calls=_wire_tool_calls(calls),
        )
        for call in calls:
            call.message = carrier
            context.tool_calls.append(call)
            logger.info("[%s] tool call %s with %s", self.name, call.function, call.args)

        async for out in self.tools.run_tool_calls(context, calls, self):
            yield out

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete_once(
        self,
        model: ChatModel,
        thread: list[CompletionPayload],
        opts: CompletionOptions,
    ) -> ProviderReply:
        body = await self._request_body(model, thread, opts, stream=False)

        last_error: Exception | None = None
        for attempt in range(1 + self._max_retries):
            try:
                resp = await self._client.post(
                    "/chat/completions", json=body, headers=self._build_headers()
                )
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = httpx.HTTPStatusError(
                        f"HTTP {resp.status_code}",
                        request=resp.request,
                        response=resp,
                    )
                    continue
                resp.raise_for_status()
            except httpx.TransportError as exc:
                last_error = exc
                if attempt < self._max_retries:
                    continue
                raise
            else:
                return self._parse_reply(resp.json())

        assert last_error is not None
        raise last_error

    def _parse_reply(self, data: dict) -> ProviderReply:
        message = (data.get("choices") or [{}])[0].get("message") or {}
        raw_usage = data.get("usage") or {}
        usage = LlmUsage(
            prompt_tokens=raw_usage.get("prompt_tokens") or 0,
            completion_tokens=raw_usage.get("completion_tokens") or 0,
        )

        raw_calls = message.get("tool_calls") or []
        if not raw_calls:
            return ProviderReply(content=message.get("content"), usage=usage)

        calls = [
            ToolCall(
                id=raw.get("id") or f"call_{idx}",
                function=(raw.get("function") or {}).get("name", ""),
                args=(raw.get("function") or {}).get("arguments") or "{}",
            )
            for idx, raw in enumerate(raw_calls)
        ]
        carrier = CompletionPayload(
            role="assistant",
            content=message.get("content") or "",
            tool_calls=_wire_tool_calls(calls),
        )
        for call in calls:
            call.message = carrier
        return ProviderReply(content=message.get("content"), tool_calls=calls, usage=usage)

    async def aclose(self) -> None:
        await self._client.aclose()
