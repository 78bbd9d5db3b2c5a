"""One attempt of a run: open the transport, decode, forward events.

The runner never retries.  It delivers content events to the sink and
ends in one of two ways: it returns (the provider finished) or it raises
a ``MuChatError`` for the resiliency controller to judge.
"""

from __future__ import annotations

import logging
from typing import Mapping

import httpx

from mu_chat.config import ProviderKind
from mu_chat.errors import ConfigurationError, ProviderError, TransportError
from mu_chat.providers import Adapter, default_adapters
from mu_chat.providers.base import AgentAdapter, Emit, SseAdapter
from mu_chat.streaming.decoder import LineDecoder, sse_data
from mu_chat.types import EventType, RunRequest, StreamEvent

_logger = logging.getLogger(__name__)

# The per-attempt guard owns the overall deadline; httpx only bounds connect.
_HTTP_TIMEOUT = httpx.Timeout(None, connect=30.0)
_ERROR_BODY_CHARS = 500


class _Forwarder:
    """Applies the attempt-level event rules before the sink sees anything.

    Content passes through, ``error`` becomes ``ProviderError`` and the
    first ``done`` closes the attempt; later events are dropped.
    """

    def __init__(self, sink: Emit) -> None:
        self._sink = sink
        self.finished = False

    async def __call__(self, event: StreamEvent) -> None:
        if self.finished:
            return
        if event.type is EventType.ERROR:
            raise ProviderError(event.message or "Provider reported an error.")
        if event.type is EventType.DONE:
            self.finished = True
            return
        await self._sink(event)


class TurnRunner:
    """Runs single attempts against whichever adapter serves the provider kind."""

    def __init__(
        self,
        adapters: Mapping[ProviderKind, Adapter] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._adapters = dict(adapters) if adapters is not None else default_adapters()
        self._transport = transport

    def adapter_for(self, kind: ProviderKind) -> Adapter:
        try:
            return self._adapters[kind]
        except KeyError:
            raise ConfigurationError(f"No adapter for provider kind {kind.value}") from None

    async def run(self, request: RunRequest, api_key: str, sink: Emit) -> None:
        adapter = self.adapter_for(request.settings.provider_kind)
        forward = _Forwarder(sink)
        if isinstance(adapter, AgentAdapter):
            await adapter.stream(request, api_key, forward)
        else:
            await self._run_http(adapter, request, api_key, forward)

    # ------------------------------------------------------------------
    # HTTP / SSE
    # ------------------------------------------------------------------

    async def _run_http(
        self,
        adapter: SseAdapter,
        request: RunRequest,
        api_key: str,
        forward: _Forwarder,
    ) -> None:
        outgoing = adapter.build_request(request, api_key)
        _logger.debug("POST %s (%s)", outgoing.url, adapter.name)
        # New client per attempt: nothing is pooled across turns.
        async with httpx.AsyncClient(transport=self._transport, timeout=_HTTP_TIMEOUT) as client:
            try:
                async with client.stream(
                    "POST", outgoing.url, headers=outgoing.headers, json=outgoing.body,
                ) as resp:
                    if not resp.is_success:
                        body = await _error_body(resp)
                        raise TransportError(
                            f"Provider returned HTTP {resp.status_code}: {body}"
                        )
                    await self._consume(resp, adapter, forward)
            except httpx.HTTPError as e:
                raise TransportError(f"Request to provider failed: {e}") from e

    async def _consume(
        self,
        resp: httpx.Response,
        adapter: SseAdapter,
        forward: _Forwarder,
    ) -> None:
        decoder = LineDecoder()
        received = False
        async for chunk in resp.aiter_bytes():
            if not chunk:
                continue
            received = True
            for line in decoder.feed(chunk):
                if await self._dispatch(line, adapter, forward):
                    return
        if not received:
            raise TransportError("Provider response has no stream body.")
        for line in decoder.flush():
            if await self._dispatch(line, adapter, forward):
                return
        # Stream closed without an explicit terminator: treat as finished.

    @staticmethod
    async def _dispatch(line: str, adapter: SseAdapter, forward: _Forwarder) -> bool:
        payload = sse_data(line)
        if payload is None:
            return False
        for event in adapter.classify(payload):
            await forward(event)
            if forward.finished:
                return True
        return False


async def _error_body(resp: httpx.Response) -> str:
    try:
        await resp.aread()
    except httpx.HTTPError:
        return ""
    return resp.text.strip()[:_ERROR_BODY_CHARS]
