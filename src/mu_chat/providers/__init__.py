"""Provider adapters for mu-chat."""

from __future__ import annotations

from mu_chat.config import ProviderKind
from mu_chat.providers.acp import AcpAdapter
from mu_chat.providers.anthropic import AnthropicAdapter
from mu_chat.providers.base import AgentAdapter, SseAdapter
from mu_chat.providers.openai import OpenAICompatibleAdapter
from mu_chat.providers.sdk_agent import SdkAgentAdapter

Adapter = SseAdapter | AgentAdapter


def default_adapters() -> dict[ProviderKind, Adapter]:
    """One adapter per provider kind."""
    return {
        ProviderKind.OPENAI: OpenAICompatibleAdapter(),
        ProviderKind.ANTHROPIC: AnthropicAdapter(),
        ProviderKind.CLI_AGENT: AcpAdapter(),
        ProviderKind.SDK_AGENT: SdkAgentAdapter(),
    }


__all__ = [
    "AcpAdapter",
    "Adapter",
    "AgentAdapter",
    "AnthropicAdapter",
    "OpenAICompatibleAdapter",
    "SdkAgentAdapter",
    "SseAdapter",
    "default_adapters",
]
