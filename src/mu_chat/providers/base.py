"""Provider adapter contracts.

Two shapes exist:

* ``SseAdapter`` -- HTTP providers.  The adapter only builds the request
  and classifies one ``data:`` payload at a time; connection handling and
  line framing live in the turn runner.
* ``AgentAdapter`` -- providers that own their transport (a subprocess or
  an SDK iterator) and push events through ``emit``.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from mu_chat.types import RunRequest, StreamEvent

Emit = Callable[[StreamEvent], Awaitable[None]]


@dataclass
class HttpRequestSpec:
    """A fully resolved streaming POST."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] = field(default_factory=dict)


class SseAdapter(ABC):
    """Request construction and record classification for an SSE provider."""

    name: str

    @abstractmethod
    def build_request(self, request: RunRequest, api_key: str) -> HttpRequestSpec:
        """Return the endpoint, headers and JSON body for one attempt."""

    @abstractmethod
    def classify(self, payload: str) -> list[StreamEvent]:
        """Map one ``data:`` payload to zero or more events.

        A terminal event (``done`` or ``error``) ends the attempt; any
        events after it are ignored.
        """


class AgentAdapter(ABC):
    """A provider that drives its own transport."""

    name: str

    @abstractmethod
    async def stream(self, request: RunRequest, api_key: str, emit: Emit) -> None:
        """Run one turn, calling *emit* for every event in order."""


def decode_record(payload: str) -> dict[str, Any] | None:
    """JSON-decode one record; malformed or non-object payloads give ``None``."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def error_message(record: dict[str, Any]) -> str:
    """``record["error"]["message"]`` when present, else ``""``."""
    err = record.get("error")
    if isinstance(err, dict):
        msg = err.get("message")
        return msg if isinstance(msg, str) else ""
    return ""


def extract_model_ids(payload: Any) -> list[str]:
    """Collect model ids from the listing shapes providers return.

    Accepts ``{"data": [{"id"}]}``, ``{"models": [str | {"id"|"name"}]}``
    and ``{"model_ids": [str]}``; the result is deduplicated and sorted.
    """
    if not isinstance(payload, dict):
        return []
    found: set[str] = set()
    for key in ("data", "models"):
        items = payload.get(key)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, str) and item:
                found.add(item)
            elif isinstance(item, dict):
                value = item.get("id") or item.get("model") or item.get("name")
                if isinstance(value, str) and value:
                    found.add(value)
    model_ids = payload.get("model_ids")
    if isinstance(model_ids, list):
        found.update(v for v in model_ids if isinstance(v, str) and v)
    return sorted(found)
