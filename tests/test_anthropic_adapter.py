"""Tests for the Anthropic Messages adapter."""

import json

import pytest

from mu_chat.config import ProviderKind, ProviderSettings
from mu_chat.providers.anthropic import (
    AnthropicAdapter,
    resolve_anthropic_endpoint,
    split_system,
)
from mu_chat.types import Attachment, Message, Role, RunRequest, StreamEvent


@pytest.fixture
def adapter() -> AnthropicAdapter:
    return AnthropicAdapter()


class TestEndpoint:
    def test_appends_v1(self):
        assert resolve_anthropic_endpoint("https://api.anthropic.com", "messages") == \
            "https://api.anthropic.com/v1/messages"

    def test_keeps_existing_v1(self):
        assert resolve_anthropic_endpoint("https://gw.example.com/v1/", "models") == \
            "https://gw.example.com/v1/models"


class TestSplitSystem:
    def test_system_user_split(self):
        messages = (
            Message(Role.SYSTEM, "A"),
            Message(Role.USER, "B"),
            Message(Role.SYSTEM, "C"),
            Message(Role.ASSISTANT, "D"),
        )
        system, conversation = split_system(messages)
        assert system == "A\n\nC"
        assert conversation == [
            {"role": "user", "content": [{"type": "text", "text": "B"}]},
            {"role": "assistant", "content": [{"type": "text", "text": "D"}]},
        ]

    def test_blank_system_and_empty_messages_dropped(self):
        system, conversation = split_system((Message(Role.SYSTEM, "  "), Message(Role.USER, "")))
        assert system == ""
        assert conversation == []

    def test_image_block(self):
        img = Attachment("x.png", kind="image", image_data_url="data:image/png;base64,QUJD")
        _, conversation = split_system((Message(Role.USER, "look", (img,)),))
        blocks = conversation[0]["content"]
        assert blocks[0] == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "QUJD"},
        }
        assert blocks[1] == {"type": "text", "text": "look"}


class TestBuildRequest:
    def test_request_shape(self, adapter):
        settings = ProviderSettings(
            provider_kind=ProviderKind.ANTHROPIC,
            base_url="https://api.anthropic.com",
            api_key_material="sk-ant",
            model="claude-test",
            max_tokens=512,
            temperature=0.2,
        )
        req = RunRequest(settings, [Message(Role.SYSTEM, "be brief"), Message(Role.USER, "hi")])
        outgoing = adapter.build_request(req, "sk-ant")
        assert outgoing.url == "https://api.anthropic.com/v1/messages"
        assert outgoing.headers["x-api-key"] == "sk-ant"
        assert outgoing.headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in outgoing.headers
        assert outgoing.body == {
            "model": "claude-test",
            "stream": True,
            "max_tokens": 512,
            "temperature": 0.2,
            "system": "be brief",
            "messages": [{"role": "user", "content": [{"type": "text", "text": "hi"}]}],
        }

    def test_no_system_key_without_system_messages(self, adapter):
        settings = ProviderSettings(provider_kind="anthropic", base_url="https://x", model="m")
        outgoing = adapter.build_request(RunRequest(settings, [Message(Role.USER, "hi")]), "k")
        assert "system" not in outgoing.body


class TestClassify:
    def test_text_delta(self, adapter):
        record = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}}
        assert adapter.classify(json.dumps(record)) == [StreamEvent.delta("Hi")]

    def test_thinking_delta(self, adapter):
        record = {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "t"}}
        assert adapter.classify(json.dumps(record)) == [StreamEvent.reasoning("t")]

    def test_message_stop(self, adapter):
        assert adapter.classify('{"type":"message_stop"}') == [StreamEvent.done()]

    def test_error_record(self, adapter):
        record = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        assert adapter.classify(json.dumps(record)) == [
            StreamEvent.error("Overloaded"), StreamEvent.done(),
        ]

    def test_error_without_message(self, adapter):
        assert adapter.classify('{"type":"error"}')[0] == StreamEvent.error("Streaming failed.")

    def test_other_records_ignored(self, adapter):
        assert adapter.classify('{"type":"message_start","message":{}}') == []
        assert adapter.classify('{"type":"ping"}') == []
        assert adapter.classify("not json") == []
