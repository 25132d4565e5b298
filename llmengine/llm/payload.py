"""
Turns a conversation thread into provider-shaped request messages.

Providers with their own multimodal layout subclass ``PayloadBuilder`` and
override the ``requires_flat_text_payload`` / ``add_*_to_payload`` hooks.
"""

from __future__ import annotations

import logging

from llmengine.llm.types import (
    Attachment,
    ChatModel,
    CompletionOptions,
    CompletionPayload,
    Message,
)

logger = logging.getLogger(__name__)

FLAT_TEXT_ROLES = ("system", "assistant")


class PayloadBuilder:
    def requires_flat_text_payload(self, msg: Message) -> bool:
        return msg.role in FLAT_TEXT_ROLES

    def add_text_to_payload(
        self,
        msg: Message,
        attachment: Attachment,
        payload: CompletionPayload,
        opts: CompletionOptions | None = None,
    ) -> None:
        if isinstance(payload.content, list):
            # flat roles keep a single text segment
            if self.requires_flat_text_payload(msg):
                for segment in payload.content:
                    if segment["type"] == "text":
                        segment["text"] = f"{segment['text']}\n\n{attachment.content}"
                        return
            payload.content.append({"type": "text", "text": attachment.content})
        else:
            payload.content = f"{payload.content}\n\n{attachment.content}"

    def add_image_to_payload(
        self,
        attachment: Attachment,
        payload: CompletionPayload,
        opts: CompletionOptions | None = None,
    ) -> None:
        if isinstance(payload.content, str):
            payload.content = [{"type": "text", "text": payload.content}]
        payload.content.append(
            {
                "type": "image_url",
                "image_url": {"url": f"data:{attachment.mime_type};base64,{attachment.content}"},
            }
        )

    def build(
        self,
        model: ChatModel,
        thread: list[Message] | str,
        opts: CompletionOptions | None = None,
    ) -> list[CompletionPayload]:
        """
        Build one payload per message that has model-facing content.

        The thread itself is left untouched.
        """
        if isinstance(thread, str):
            thread = [Message(role="user", content=thread)]

        payloads: list[CompletionPayload] = []
        for msg in thread:
            text = msg.content_for_model
            if text is None:
                continue

            if self.requires_flat_text_payload(msg):
                payload = CompletionPayload(role=msg.role, content=text)
            else:
                payload = CompletionPayload(role=msg.role, content=[{"type": "text", "text": text}])

            for attachment in msg.attachments or []:
                # history loaded without attachment bodies
                if attachment.content is None:
                    logger.warning("Attachment contents not available. Skipping attachment.")
                    continue

                if attachment.is_text():
                    self.add_text_to_payload(msg, attachment, payload, opts)

                if attachment.is_image():
                    if model.capabilities.vision:
                        self.add_image_to_payload(attachment, payload, opts)
                    else:
                        logger.warning(
                            "Model %s has no vision capability. Dropping %s attachment.",
                            model.id,
                            attachment.mime_type,
                        )

            payloads.append(payload)

        return payloads
