"""Stream framing helpers."""

from mu_chat.streaming.decoder import LineDecoder, sse_data

__all__ = ["LineDecoder", "sse_data"]
