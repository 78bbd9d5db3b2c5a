"""Incremental line framing for streamed provider output.

Used for SSE bodies (``data:`` lines) and for the newline-delimited
JSON-RPC traffic of CLI agents.
"""

from __future__ import annotations

import codecs

_DATA_PREFIX = "data:"


class LineDecoder:
    """Turn arbitrarily split chunks into complete lines.

    Bytes go through an incremental decoder, so a multi-byte character
    split across two chunks is held back until it is complete.  The
    unterminated tail of the buffer is kept until a ``\\n`` arrives;
    a trailing ``\\r`` is stripped.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [line.removesuffix("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever partial line remains at end of stream."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if not tail:
            return []
        return [line.removesuffix("\r") for line in tail.split("\n") if line]

    @property
    def pending(self) -> str:
        return self._buffer


def sse_data(line: str) -> str | None:
    """Payload of an SSE ``data:`` line, or ``None`` for any other line."""
    trimmed = line.strip()
    if not trimmed.startswith(_DATA_PREFIX):
        return None
    return trimmed[len(_DATA_PREFIX):].strip()
