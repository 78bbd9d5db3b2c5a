"""OpenAI-compatible ``/chat/completions`` streaming adapter."""

from __future__ import annotations

from typing import Any

from mu_chat.providers.base import (
    HttpRequestSpec,
    SseAdapter,
    decode_record,
    error_message,
)
from mu_chat.types import Message, RunRequest, StreamEvent

_DONE_SENTINEL = "[DONE]"


def _message_payload(message: Message) -> dict[str, Any]:
    text = message.inline_text()
    images = message.images
    if not images:
        return {"role": message.role_name, "content": text}
    parts: list[dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    for img in images:
        parts.append({"type": "image_url", "image_url": {"url": img.image_data_url}})
    return {"role": message.role_name, "content": parts}


class OpenAICompatibleAdapter(SseAdapter):
    """Adapter for any server speaking the OpenAI chat completions stream."""

    name = "openai-compatible"

    def build_request(self, request: RunRequest, api_key: str) -> HttpRequestSpec:
        settings = request.settings
        # Sampling parameters are left to the server; some backends reject them.
        body: dict[str, Any] = {
            "model": settings.model.strip(),
            "stream": True,
            "messages": [_message_payload(m) for m in request.messages],
        }
        return HttpRequestSpec(
            url=f"{settings.normalized_base_url}/chat/completions",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            body=body,
        )

    def classify(self, payload: str) -> list[StreamEvent]:
        if payload == _DONE_SENTINEL:
            return [StreamEvent.done()]

        record = decode_record(payload)
        if record is None:
            return []

        message = error_message(record)
        if message:
            return [StreamEvent.error(message), StreamEvent.done()]

        choices = record.get("choices")
        if not isinstance(choices, list) or not choices:
            return []
        choice = choices[0]
        if not isinstance(choice, dict):
            return []
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            return []

        events: list[StreamEvent] = []
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            events.append(StreamEvent.reasoning(reasoning))
        content = delta.get("content")
        if isinstance(content, str) and content:
            events.append(StreamEvent.delta(content))
        if choice.get("finish_reason") is not None:
            events.append(StreamEvent.done())
        return events
