"""Tests for single attempts through the TurnRunner (HTTP via httpx.MockTransport)."""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import ChunkedStream, content_chunk, openai_settings, sse_body, sse_handler
from mu_chat.config import ProviderKind
from mu_chat.core.turn import TurnRunner
from mu_chat.errors import ConfigurationError, ProviderError, TransportError
from mu_chat.types import Message, Role, RunRequest, StreamEvent


def _request(**overrides) -> RunRequest:
    return RunRequest(openai_settings(**overrides), [Message(Role.USER, "hi")])


async def _collect(runner: TurnRunner, request: RunRequest, api_key: str = "k1") -> list[StreamEvent]:
    events: list[StreamEvent] = []

    async def sink(event: StreamEvent) -> None:
        events.append(event)

    await runner.run(request, api_key, sink)
    return events


class TestHttpAttempt:
    @pytest.mark.asyncio
    async def test_streams_deltas_in_order(self):
        body = sse_body(content_chunk("He"), content_chunk("llo"))
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(body)))
        events = await _collect(runner, _request())
        assert events == [StreamEvent.delta("He"), StreamEvent.delta("llo")]

    @pytest.mark.asyncio
    async def test_request_on_the_wire(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=sse_body(content_chunk("ok")))

        runner = TurnRunner(transport=httpx.MockTransport(handler))
        await _collect(runner, _request(), api_key="secret")
        assert str(seen[0].url) == "https://api.example.com/v1/chat/completions"
        assert seen[0].method == "POST"
        assert seen[0].headers["authorization"] == "Bearer secret"
        body = json.loads(seen[0].content)
        assert body["stream"] is True
        assert body["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_chunk_boundaries_do_not_matter(self):
        raw = sse_body(content_chunk("こんにちは"), content_chunk("世界"))
        chunks = [raw[i:i + 5] for i in range(0, len(raw), 5)]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=ChunkedStream(chunks))

        runner = TurnRunner(transport=httpx.MockTransport(handler))
        events = await _collect(runner, _request())
        assert "".join(e.text for e in events) == "こんにちは世界"

    @pytest.mark.asyncio
    async def test_nothing_forwarded_after_done(self):
        body = sse_body(content_chunk("a"), "[DONE]", content_chunk("late"))
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(body)))
        assert await _collect(runner, _request()) == [StreamEvent.delta("a")]

    @pytest.mark.asyncio
    async def test_stream_close_without_sentinel_is_success(self):
        body = sse_body(content_chunk("a"), done=False)
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(body)))
        assert await _collect(runner, _request()) == [StreamEvent.delta("a")]

    @pytest.mark.asyncio
    async def test_unterminated_last_line_is_flushed(self):
        body = b'data: {"choices":[{"delta":{"content":"tail"}}]}'
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(body)))
        assert await _collect(runner, _request()) == [StreamEvent.delta("tail")]

    @pytest.mark.asyncio
    async def test_malformed_lines_skipped(self):
        body = sse_body("{broken", content_chunk("fine"))
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(body)))
        assert await _collect(runner, _request()) == [StreamEvent.delta("fine")]


class TestHttpFailures:
    @pytest.mark.asyncio
    async def test_non_2xx_status(self):
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(b'{"error":"nope"}', status=401)))
        with pytest.raises(TransportError, match=r'Provider returned HTTP 401: \{"error":"nope"\}'):
            await _collect(runner, _request())

    @pytest.mark.asyncio
    async def test_error_body_truncated(self):
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(b"x" * 2000, status=500)))
        with pytest.raises(TransportError) as exc_info:
            await _collect(runner, _request())
        assert str(exc_info.value) == "Provider returned HTTP 500: " + "x" * 500

    @pytest.mark.asyncio
    async def test_empty_body(self):
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(b"")))
        with pytest.raises(TransportError, match="no stream body"):
            await _collect(runner, _request())

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        runner = TurnRunner(transport=httpx.MockTransport(handler))
        with pytest.raises(TransportError, match="connection refused"):
            await _collect(runner, _request())

    @pytest.mark.asyncio
    async def test_embedded_error_raises_provider_error(self):
        body = sse_body(content_chunk("He"), {"error": {"message": "quota exceeded"}})
        runner = TurnRunner(transport=httpx.MockTransport(sse_handler(body)))
        events: list[StreamEvent] = []

        async def sink(event: StreamEvent) -> None:
            events.append(event)

        with pytest.raises(ProviderError, match="quota exceeded"):
            await runner.run(_request(), "k1", sink)
        assert events == [StreamEvent.delta("He")]

    @pytest.mark.asyncio
    async def test_missing_adapter(self):
        runner = TurnRunner(adapters={})
        with pytest.raises(ConfigurationError):
            await _collect(runner, _request())


class TestAnthropicAttempt:
    @pytest.mark.asyncio
    async def test_anthropic_stream(self):
        records = [
            {"type": "message_start", "message": {"id": "msg_1"}},
            {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "hmm"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "message_stop"},
        ]
        body = "".join(
            f"event: {r['type']}\ndata: {json.dumps(r)}\n\n" for r in records
        ).encode()
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=body)

        runner = TurnRunner(transport=httpx.MockTransport(handler))
        request = RunRequest(
            openai_settings(provider_kind=ProviderKind.ANTHROPIC, base_url="https://api.anthropic.com"),
            [Message(Role.USER, "hi")],
        )
        events = await _collect(runner, request, api_key="sk-ant")
        assert events == [StreamEvent.reasoning("hmm"), StreamEvent.delta("Hi")]
        assert str(seen[0].url) == "https://api.anthropic.com/v1/messages"
        assert seen[0].headers["x-api-key"] == "sk-ant"
