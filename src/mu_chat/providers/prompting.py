"""Flatten a conversation into a single prompt for agent runtimes."""

from __future__ import annotations

import time
from typing import Sequence

from mu_chat.config import ProviderSettings
from mu_chat.types import Message, Role

# SDK agent prompts only carry the most recent part of the history.
AGENT_HISTORY_LIMIT = 20

_AGENT_BASE_PROMPT = "\n".join([
    "You are a practical coding assistant integrated in a desktop chat client.",
    "Prefer concise and actionable responses.",
    "Use Markdown when formatting is helpful.",
    "Confirm destructive operations before running them.",
])


def format_history(messages: Sequence[Message], limit: int | None = None) -> str:
    """Role-tagged transcript: ``[ROLE]\\n<content>`` blocks, blank-line joined."""
    selected = list(messages)[-limit:] if limit else list(messages)
    blocks = []
    for msg in selected:
        content = msg.inline_text().strip()
        if content:
            blocks.append(f"[{msg.role_name.upper()}]\n{content}")
    return "\n\n".join(blocks)


def build_agent_prompt(settings: ProviderSettings, messages: Sequence[Message]) -> str:
    """Prompt for the SDK agent: system prompt, runtime context, history, input."""
    system = _AGENT_BASE_PROMPT
    user_system = "\n\n".join(
        m.content.strip() for m in messages
        if m.role_name == Role.SYSTEM.value and m.content.strip()
    ) or settings.system_prompt.strip()
    if user_system:
        system += f"\n\n<user_system_prompt>\n{user_system}\n</user_system_prompt>"

    conversation = [m for m in messages if m.role_name != Role.SYSTEM.value]
    latest = ""
    if conversation and conversation[-1].role_name == Role.USER.value:
        latest = conversation[-1].inline_text().strip()
        conversation = conversation[:-1]

    segments = [
        system,
        "<runtime_context>\n"
        f"current_time: {time.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"working_directory: {settings.cwd}\n"
        f"model: {settings.model}\n"
        "</runtime_context>",
    ]
    history = format_history(conversation, limit=AGENT_HISTORY_LIMIT)
    if history:
        segments.append(f"<conversation_history>\n{history}\n</conversation_history>")
    segments.append(f"<latest_user_input>\n{latest}\n</latest_user_input>")
    return "\n\n".join(segments)
