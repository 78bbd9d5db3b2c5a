"""Tests for agent prompt and history formatting."""

from mu_chat.config import ProviderKind, ProviderSettings
from mu_chat.providers.prompting import AGENT_HISTORY_LIMIT, build_agent_prompt, format_history
from mu_chat.types import Attachment, Message, Role


def test_format_history_tags_roles():
    messages = [Message(Role.USER, "hi"), Message(Role.ASSISTANT, "hello")]
    assert format_history(messages) == "[USER]\nhi\n\n[ASSISTANT]\nhello"


def test_format_history_skips_empty_and_inlines_attachments():
    messages = [
        Message(Role.USER, "   "),
        Message(Role.USER, "read", (Attachment("notes.md", text_content="# Notes"),)),
    ]
    assert format_history(messages) == "[USER]\nread\n\n[Attachment: notes.md]\n# Notes"


def test_format_history_limit():
    messages = [Message(Role.USER, str(i)) for i in range(5)]
    assert format_history(messages, limit=2) == "[USER]\n3\n\n[USER]\n4"


class TestBuildAgentPrompt:
    def _settings(self, **kw) -> ProviderSettings:
        return ProviderSettings(provider_kind=ProviderKind.SDK_AGENT, working_directory="/repo",
                                model="claude-test", **kw)

    def test_sections(self):
        prompt = build_agent_prompt(
            self._settings(),
            [Message(Role.USER, "first"), Message(Role.ASSISTANT, "ok"), Message(Role.USER, "next")],
        )
        assert "working_directory: /repo" in prompt
        assert "model: claude-test" in prompt
        assert "<conversation_history>\n[USER]\nfirst\n\n[ASSISTANT]\nok\n</conversation_history>" in prompt
        assert prompt.endswith("<latest_user_input>\nnext\n</latest_user_input>")
        assert "<user_system_prompt>" not in prompt

    def test_settings_system_prompt_used_when_no_system_message(self):
        prompt = build_agent_prompt(self._settings(system_prompt="Answer in French."),
                                    [Message(Role.USER, "hi")])
        assert "<user_system_prompt>\nAnswer in French.\n</user_system_prompt>" in prompt
        assert "<conversation_history>" not in prompt

    def test_history_limited(self):
        messages = [Message(Role.USER, f"m{i}") for i in range(AGENT_HISTORY_LIMIT + 5)]
        prompt = build_agent_prompt(self._settings(), messages)
        # m24 is the latest input; history keeps m4..m23.
        assert "[USER]\nm3\n" not in prompt
        assert "[USER]\nm4\n" in prompt
        assert "[USER]\nm23\n" in prompt
