"""Shared fixtures: provider settings and mock SSE servers."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Iterable

import httpx
import pytest

from mu_chat.config import ProviderKind, ProviderSettings
from mu_chat.core.turn import TurnRunner
from mu_chat.providers import default_adapters
from mu_chat.providers.acp import AcpAdapter

FAKE_AGENT = Path(__file__).parent / "fixtures" / "fake_acp_agent.py"


def openai_settings(**overrides: Any) -> ProviderSettings:
    data: dict[str, Any] = {
        "provider_kind": ProviderKind.OPENAI,
        "base_url": "https://api.example.com/v1",
        "api_key_material": "k1",
        "model": "m",
        "request_timeout_ms": 0,
        "retry_count": 0,
    }
    data.update(overrides)
    return ProviderSettings(**data)


def sse_body(*records: Any, done: bool = True) -> bytes:
    """SSE body with one ``data:`` line per record."""
    lines = []
    for record in records:
        payload = record if isinstance(record, str) else json.dumps(record)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def content_chunk(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


def sse_handler(body: bytes, status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=body, headers={"content-type": "text/event-stream"})
    return handler


async def _never_respond(request: httpx.Request) -> httpx.Response:
    await asyncio.sleep(3600)
    raise AssertionError("unreachable")


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in the given chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = list(chunks)

    async def __aiter__(self):
        for chunk in self._chunks:
            await asyncio.sleep(0)
            yield chunk


def agent_command(scenario: str) -> tuple[str, ...]:
    return (sys.executable, str(FAKE_AGENT), scenario)


def agent_runner(scenario: str, transport: httpx.AsyncBaseTransport | None = None) -> TurnRunner:
    adapters = default_adapters()
    adapters[ProviderKind.CLI_AGENT] = AcpAdapter(command=agent_command(scenario))
    return TurnRunner(adapters=adapters, transport=transport)


@pytest.fixture
def never_respond() -> httpx.MockTransport:
    return httpx.MockTransport(_never_respond)

