"""Anthropic Messages API streaming adapter."""

from __future__ import annotations

from typing import Any

from mu_chat.providers.base import (
    HttpRequestSpec,
    SseAdapter,
    decode_record,
    error_message,
)
from mu_chat.types import Message, Role, RunRequest, StreamEvent

ANTHROPIC_VERSION = "2023-06-01"


def resolve_anthropic_endpoint(base_url: str, resource: str) -> str:
    """``{base}/{resource}`` when the base already ends in ``/v1``."""
    normalized = base_url.strip().rstrip("/")
    if normalized.endswith("/v1"):
        return f"{normalized}/{resource}"
    return f"{normalized}/v1/{resource}"


def _image_block(data_url: str) -> dict[str, Any] | None:
    # data:<media_type>;base64,<data>
    if not data_url.startswith("data:") or ";base64," not in data_url:
        return None
    header, data = data_url[5:].split(";base64,", 1)
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": header, "data": data},
    }


def _content_blocks(message: Message) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for img in message.images:
        block = _image_block(img.image_data_url)
        if block:
            blocks.append(block)
    text = message.inline_text()
    if text:
        blocks.append({"type": "text", "text": text})
    return blocks


def split_system(messages: tuple[Message, ...]) -> tuple[str, list[dict[str, Any]]]:
    """Separate system prompts from the user/assistant conversation.

    System messages are joined with blank lines; conversation messages
    with nothing to send are dropped.
    """
    system_parts: list[str] = []
    conversation: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role_name == Role.SYSTEM.value:
            text = msg.content.strip()
            if text:
                system_parts.append(text)
            continue
        blocks = _content_blocks(msg)
        if blocks:
            conversation.append({"role": msg.role_name, "content": blocks})
    return "\n\n".join(system_parts), conversation


class AnthropicAdapter(SseAdapter):
    """Adapter for ``POST /v1/messages`` with ``stream: true``."""

    name = "anthropic"

    def build_request(self, request: RunRequest, api_key: str) -> HttpRequestSpec:
        settings = request.settings
        system, conversation = split_system(request.messages)
        body: dict[str, Any] = {
            "model": settings.model.strip(),
            "stream": True,
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "messages": conversation,
        }
        if system:
            body["system"] = system
        return HttpRequestSpec(
            url=resolve_anthropic_endpoint(settings.base_url, "messages"),
            headers={
                "Content-Type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            body=body,
        )

    def classify(self, payload: str) -> list[StreamEvent]:
        if not payload or payload == "[DONE]":
            return [StreamEvent.done()]

        record = decode_record(payload)
        if record is None:
            return []

        if record.get("type") == "error":
            message = error_message(record) or "Streaming failed."
            return [StreamEvent.error(message), StreamEvent.done()]

        events: list[StreamEvent] = []
        delta = record.get("delta")
        if isinstance(delta, dict):
            thinking = delta.get("thinking")
            if isinstance(thinking, str) and thinking:
                events.append(StreamEvent.reasoning(thinking))
            text = delta.get("text")
            if isinstance(text, str) and text:
                events.append(StreamEvent.delta(text))

        if record.get("type") == "message_stop":
            events.append(StreamEvent.done())
        return events
