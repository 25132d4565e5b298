"""
Ollama provider strategy.

Streams responses from a local Ollama instance via its ``/api/chat``
endpoint (newline-delimited JSON).  Tool calls arrive whole in a single
chunk, are executed through the engine's ``ToolOrchestrator`` and answered
with a fresh stream.

Dependencies: ``httpx``.
"""

from __future__ import annotations

import fnmatch
import json
import logging
from typing import Any, AsyncIterator

import httpx

from llmengine.llm.payload import PayloadBuilder
from llmengine.llm.providers.base import ProviderReply, ProviderStrategy
from llmengine.llm.types import (
    Attachment,
    ChatModel,
    CompletionOptions,
    CompletionPayload,
    ContentChunk,
    LlmChunk,
    LlmUsage,
    Message,
    ModelCapabilities,
    NativeStream,
    StreamingContext,
    ToolCall,
    UsageChunk,
)

logger = logging.getLogger(__name__)

TOOL_MODELS = {
    "athene-v2", "aya-expanse", "cogito", "command-a", "command-r",
    "command-r-plus", "command-r7b", "command-r7b-arabic", "deepseek-r1",
    "deepseek-v3.1", "devstral", "firefunction-v2", "gpt-oss",
    "gpt-oss-safeguard", "granite3-dense", "granite3-moe", "granite3.1-dense",
    "granite3.1-moe", "granite3.2", "granite3.2-vision", "granite3.3",
    "granite4", "hermes3", "llama3-groq-tool-use", "llama3.1", "llama3.2",
    "llama3.3", "llama4", "magistral", "mistral", "mistral-large",
    "mistral-nemo", "mistral-small", "mistral-small3.1", "mistral-small3.2",
    "mixtral", "nemotron", "nemotron-mini", "phi4-mini", "qwen2", "qwen2.5",
    "qwen2.5-coder", "qwen3", "qwq", "smollm2",
}

VISION_MODELS = [
    "bakllava", "gemma3", "granite3.2-vision", "llama3.2-vision", "llama4",
    "llava", "llava-llama3", "llava-phi3", "minicpm-v", "mistral-small3.1",
    "mistral-small3.2", "moondream", "qwen2.5vl", "qwen3-vl",
]

REASONING_MODELS = [
    "cogito:*", "deepseek-r1:*", "deepseek-v3.1:*", "gpt-oss:*",
    "gpt-oss-safeguard:*", "magistral:*", "openthinker:*", "phi:*", "qwq:*",
    "qwen3:*",
]


class OllamaPayloadBuilder(PayloadBuilder):
    """Ollama wants flat text content and base64 images in ``images``."""

    def requires_flat_text_payload(self, msg: Message) -> bool:
        return True

    def add_image_to_payload(
        self,
        attachment: Attachment,
        payload: CompletionPayload,
        opts: CompletionOptions | None = None,
    ) -> None:
        if payload.images is None:
            payload.images = []
        payload.images.append(attachment.content)


class OllamaStrategy(ProviderStrategy):
    """
    Strategy for a local `Ollama <https://ollama.com>`_ instance.

    Parameters
    ----------
    url:
        Base URL of the Ollama HTTP API.
    timeout:
        HTTP request timeout in seconds.
    client:
        Pre-built ``httpx.AsyncClient`` (tests inject a mock transport).
    """

    def __init__(
        self,
        url: str = "http://localhost:11434",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self.payload_builder = OllamaPayloadBuilder()
        self._client = client or httpx.AsyncClient(base_url=url.rstrip("/"), timeout=timeout)

    # ------------------------------------------------------------------
    # Identity & catalog
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "ollama"

    def model_capabilities(self, model_id: str) -> ModelCapabilities:
        family = model_id.split(":")[0]
        return ModelCapabilities(
            tools=family in TOOL_MODELS,
            vision=any(v in model_id for v in VISION_MODELS),
            reasoning=any(fnmatch.fnmatchcase(model_id, pat) for pat in REASONING_MODELS),
            caching=False,
        )

    async def list_models(self) -> list[str]:
        resp = await self._client.get("/api/tags")
        resp.raise_for_status()
        return [m["name"] for m in resp.json().get("models", [])]

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

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

        options: dict = {}
        if opts.context_window_size:
            options["num_ctx"] = opts.context_window_size
        if opts.max_tokens:
            options["num_predict"] = opts.max_tokens
        if opts.temperature is not None:
            options["temperature"] = opts.temperature
        if opts.top_k:
            options["top_k"] = opts.top_k
        if opts.top_p is not None:
            options["top_p"] = opts.top_p
        options.update(opts.custom_opts)
        if options:
            body["options"] = options

        if opts.structured_output is not None:
            body["format"] = opts.structured_output.schema

        if opts.reasoning is not None and model.capabilities.reasoning:
            body["think"] = opts.reasoning

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
        body["stream"] = stream
        return body

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def start_stream(self, context: StreamingContext) -> NativeStream:
        context.thinking = False
        logger.info("[ollama] prompting model %s", context.model.id)
        body = await self._request_body(context.model, context.thread, context.opts, stream=True)
        return NativeStream(self._stream_request(body))

    async def _stream_request(self, body: dict) -> AsyncIterator[dict]:
        async with self._client.stream("POST", "/api/chat", json=body) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Ollama: failed to parse line: %s", line[:200])

    async def normalize_chunk(
        self, chunk: dict, context: StreamingContext
    ) -> AsyncIterator[LlmChunk]:
        message = chunk.get("message") or {}
        done = bool(chunk.get("done", False))

        if done and (chunk.get("eval_count") or chunk.get("prompt_eval_count")):
            context.usage.add(chunk.get("prompt_eval_count"), chunk.get("eval_count"))

        raw_calls = message.get("tool_calls") or []
        if raw_calls:
            carrier = CompletionPayload(
                role="assistant",
                content=message.get("content") or "",
                tool_calls=raw_calls,
            )
            calls: list[ToolCall] = []
            for raw in raw_calls:
                func = raw.get("function", {})
                call = ToolCall(
                    id=f"{len(context.tool_calls)}",
                    function=func.get("name", ""),
                    args=json.dumps(func.get("arguments") or {}),
                    message=carrier,
                )
                context.tool_calls.append(call)
                calls.append(call)
                logger.info("[ollama] tool call %s with %s", call.function, call.args)

            async for out in self.tools.run_tool_calls(context, calls, self):
                yield out
            return

        content = message.get("content") or ""

        # <think/> toggles reasoning
        if content == "<think>":
            context.thinking = True
            return
        if content == "</think>":
            context.thinking = False
            return

        if message.get("thinking"):
            yield ContentChunk(type="reasoning", text=message["thinking"], done=done)

        if content or done:
            yield ContentChunk(
                type="reasoning" if context.thinking else "content",
                text=content,
                done=done,
            )

        if context.opts.usage and done:
            yield UsageChunk(usage=context.usage)

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete_once(
        self,
        model: ChatModel,
        thread: list[CompletionPayload],
        opts: CompletionOptions,
    ) -> ProviderReply:
        logger.info("[ollama] prompting model %s", model.id)
        body = await self._request_body(model, thread, opts, stream=False)
        resp = await self._client.post("/api/chat", json=body)
        resp.raise_for_status()
        data = resp.json()

        message = data.get("message") or {}
        usage = LlmUsage(
            prompt_tokens=data.get("prompt_eval_count") or 0,
            completion_tokens=data.get("eval_count") or 0,
        )

        raw_calls = message.get("tool_calls") or []
        if not raw_calls:
            return ProviderReply(content=message.get("content"), usage=usage)

        carrier = CompletionPayload(
            role="assistant", content=message.get("content") or "", tool_calls=raw_calls
        )
        calls = []
        for idx, raw in enumerate(raw_calls):
            func = raw.get("function", {})
            calls.append(
                ToolCall(
                    id=f"{idx}",
                    function=func.get("name", ""),
                    args=json.dumps(func.get("arguments") or {}),
                    message=carrier,
                )
            )
            logger.info("[ollama] tool call %s with %s", calls[-1].function, calls[-1].args)
        return ProviderReply(content=message.get("content"), tool_calls=calls, usage=usage)

    # ------------------------------------------------------------------
    # Thread folding
    # ------------------------------------------------------------------

    def tool_result_message(self, call: ToolCall, content: Any) -> CompletionPayload:
        return CompletionPayload(role="tool", content=json.dumps(content, default=str))

    async def aclose(self) -> None:
        await self._client.aclose()
