"""mu-chat: streaming chat core for multiple LLM backends."""

__version__ = "0.3.0"
