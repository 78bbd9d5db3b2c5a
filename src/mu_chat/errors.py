"""Errors raised by the streaming core.

Only the resiliency controller decides whether a failure is retried;
everything below it classifies and raises.
"""

from __future__ import annotations


class MuChatError(RuntimeError):
    """Base error for streaming-core failures."""


class ConfigurationError(MuChatError):
    """Raised at dispatch when provider settings are incomplete or unusable."""


class TransportError(MuChatError):
    """Connection-level failure: bad HTTP status, missing body, process exit."""


class RequestTimeoutError(TransportError):
    """An attempt exceeded its per-attempt timeout."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Request timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class ProtocolError(TransportError):
    """The peer broke the expected message exchange."""


class ProviderError(MuChatError):
    """Error payload embedded in an otherwise successful stream."""


class RpcError(MuChatError):
    """JSON-RPC error response from a CLI agent; fatal for the run."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class RunCancelled(MuChatError):
    """The user stopped the run.  Not a failure: resolves as ``done``."""
