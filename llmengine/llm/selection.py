"""Vision fallback model selection."""

from __future__ import annotations

import logging

from llmengine.llm.types import ChatModel, CompletionOptions, Message

logger = logging.getLogger(__name__)


def requires_vision_model_switch(thread: list[Message] | str, model: ChatModel) -> bool:
    if model.capabilities.vision or isinstance(thread, str):
        return False
    return any(a.is_image() for msg in thread for a in (msg.attachments or []))


def select_model(
    model: ChatModel,
    thread: list[Message] | str,
    opts: CompletionOptions | None = None,
) -> ChatModel:
    """Swap in ``opts.vision_fallback_model`` when the thread has images the model cannot see."""
    if opts is None:
        return model

    if not requires_vision_model_switch(thread, model):
        return model

    if opts.vision_fallback_model is None:
        logger.debug(
            "Cannot switch to a vision model for %s: no vision_fallback_model in options",
            model.id,
        )
        return model

    logger.info("Switching from %s to vision model %s", model.id, opts.vision_fallback_model.id)
    return opts.vision_fallback_model
