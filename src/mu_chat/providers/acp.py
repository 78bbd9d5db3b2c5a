"""CLI agent runtime adapter -- JSON-RPC 2.0 over a subprocess's stdio.

The agent runtime is spawned per turn with piped stdio.  Messages are
newline-delimited JSON in both directions.  A turn walks a fixed
handshake::

    initialize  ->  initialized (notification)
                ->  thread/start  ->  turn/start
                ->  notifications until turn/completed

Requests we send are correlated through ``JsonRpcProcess.pending``;
responses drive the ``AcpTurn`` transition table, notifications produce
stream events.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import os
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from mu_chat import __version__
from mu_chat.config import ACP_COMMAND, acp_available
from mu_chat.errors import ProtocolError, RpcError, TransportError
from mu_chat.providers.base import AgentAdapter, Emit, error_message, extract_model_ids
from mu_chat.providers.prompting import format_history
from mu_chat.streaming.decoder import LineDecoder
from mu_chat.types import ConnectionTestResult, RunRequest, StreamEvent

_logger = logging.getLogger(__name__)

# Only the last part of a runaway process's stderr is kept.
_STDERR_TAIL_CHARS = 4000
# Seconds between SIGTERM and SIGKILL.
_TERMINATE_GRACE = 3.0
_READ_CHUNK = 65536
# Single-shot RPCs (model listing, availability) give up after this long.
_CHECK_TIMEOUT = 15.0

_METHOD_NOT_FOUND = -32601


def initialize_params() -> dict[str, Any]:
    return {
        "clientInfo": {"name": "mu-chat", "title": "mu-chat", "version": __version__},
        "capabilities": {"experimentalApi": False},
    }


def raise_for_rpc_error(message: dict[str, Any]) -> None:
    """JSON-RPC error responses are fatal for the whole run."""
    msg = error_message(message)
    if msg:
        err = message["error"]
        code = err.get("code") if isinstance(err.get("code"), int) else None
        raise RpcError(msg, code=code)


# ---------------------------------------------------------------------------
# Subprocess peer
# ---------------------------------------------------------------------------

class JsonRpcProcess:
    """A subprocess spoken to as a JSON-RPC peer over its stdin/stdout."""

    def __init__(
        self,
        command: Sequence[str] = ACP_COMMAND,
        cwd: str | None = None,
    ) -> None:
        self._command = list(command)
        self._cwd = cwd
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail = ""
        self._next_id = 0
        self._terminating = False
        self.pending: dict[int, str] = {}

    async def __aenter__(self) -> JsonRpcProcess:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                # own process group so SIGTERM reaches the whole tree
                start_new_session=os.name != "nt",
            )
        except OSError as e:
            raise TransportError(f"Failed to start {self._command[0]}: {e}") from e
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        _logger.debug("Started agent process pid=%s: %s", self._proc.pid, self._command)

    async def close(self) -> None:
        """Terminate the process (SIGTERM, then SIGKILL) and reap it."""
        proc = self._proc
        if proc is None:
            return
        self._terminating = True
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task

    @property
    def stderr_tail(self) -> str:
        return self._stderr_tail

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            chunk = await self._proc.stderr.read(_READ_CHUNK)
            if not chunk:
                return
            text = self._stderr_tail + chunk.decode("utf-8", errors="replace")
            self._stderr_tail = text[-_STDERR_TAIL_CHARS:]

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def _send(self, message: dict[str, Any]) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        line = json.dumps({"jsonrpc": "2.0", **message}) + "\n"
        try:
            self._proc.stdin.write(line.encode("utf-8"))
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"Agent process closed its input: {e}") from e

    async def request(self, method: str, params: dict[str, Any] | None = None) -> int:
        self._next_id += 1
        request_id = self._next_id
        self.pending[request_id] = method
        await self._send({"id": request_id, "method": method, "params": params or {}})
        return request_id

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._send({"method": method, "params": params or {}})

    async def respond_error(self, request_id: Any, code: int, message: str) -> None:
        await self._send({"id": request_id, "error": {"code": code, "message": message}})

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded messages until stdout closes.

        Non-JSON lines (banners, progress output) are skipped.  An exit we
        did not cause raises ``TransportError`` with the exit code and the
        stderr tail.
        """
        assert self._proc is not None and self._proc.stdout is not None
        decoder = LineDecoder()
        while True:
            chunk = await self._proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            for line in decoder.feed(chunk):
                message = _parse_line(line)
                if message is not None:
                    yield message
        for line in decoder.flush():
            message = _parse_line(line)
            if message is not None:
                yield message

        code = await self._proc.wait()
        if self._terminating:
            return
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stderr_task, timeout=1.0)
        detail = f"Agent process exited unexpectedly (code {code})"
        tail = self._stderr_tail.strip()
        if tail:
            detail += f": {tail}"
        raise TransportError(detail)


def _parse_line(line: str) -> dict[str, Any] | None:
    if not line.strip():
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        _logger.debug("Skipping non-JSON agent output: %s", line[:200])
        return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Turn state machine
# ---------------------------------------------------------------------------

class AcpState(enum.Enum):
    AWAITING_INIT = "awaiting_init"
    AWAITING_THREAD_START = "awaiting_thread_start"
    AWAITING_TURN_START = "awaiting_turn_start"
    STREAMING = "streaming"
    DONE = "done"


def extract_thread_id(result: Any) -> str | None:
    if not isinstance(result, dict):
        return None
    thread = result.get("thread")
    if isinstance(thread, dict) and isinstance(thread.get("id"), str) and thread["id"]:
        return thread["id"]
    for key in ("threadId", "thread_id", "sessionId", "conversationId"):
        value = result.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class AcpTurn:
    """One turn against the agent runtime, as an explicit state machine."""

    def __init__(
        self,
        rpc: JsonRpcProcess,
        prompt: str,
        emit: Emit,
        model: str = "",
        cwd: str = "",
    ) -> None:
        self._rpc = rpc
        self._prompt = prompt
        self._emit = emit
        self._model = model
        self._cwd = cwd
        self.state = AcpState.AWAITING_INIT
        self.thread_id: str | None = None
        self.has_emitted_any_delta = False

        # (state, method of the request being answered) -> handler
        self._transitions: dict[
            tuple[AcpState, str], Callable[[Any], Awaitable[None]]
        ] = {
            (AcpState.AWAITING_INIT, "initialize"): self._on_initialized,
            (AcpState.AWAITING_THREAD_START, "thread/start"): self._on_thread_started,
            (AcpState.AWAITING_TURN_START, "turn/start"): self._on_turn_started,
        }
        self._notifications: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "item/agentMessage/delta": self._on_agent_delta,
            "item/reasoning/textDelta": self._on_reasoning_delta,
            "item/reasoning/summaryTextDelta": self._on_reasoning_delta,
            "item/completed": self._on_item_completed,
            "error": self._on_error,
            "turn/completed": self._on_turn_completed,
        }

    async def begin(self) -> None:
        await self._rpc.request("initialize", initialize_params())

    async def handle(self, message: dict[str, Any]) -> None:
        raise_for_rpc_error(message)
        method = message.get("method")
        if method is None:
            if "id" in message:
                await self._on_response(message)
            return
        if "id" in message:
            # Server-initiated request (approval prompts and the like).
            await self._rpc.respond_error(
                message["id"], _METHOD_NOT_FOUND, f"Unsupported request: {method}",
            )
            return
        handler = self._notifications.get(method)
        if handler is not None:
            params = message.get("params")
            await handler(params if isinstance(params, dict) else {})

    async def _on_response(self, message: dict[str, Any]) -> None:
        method = self._rpc.pending.pop(message["id"], None)
        handler = self._transitions.get((self.state, method or ""))
        if handler is None:
            _logger.debug("Ignoring response to %s in state %s", method, self.state.value)
            return
        await handler(message.get("result"))

    # -- transitions ---------------------------------------------------

    async def _on_initialized(self, result: Any) -> None:
        await self._rpc.notify("initialized")
        params: dict[str, Any] = {"cwd": self._cwd, "ephemeral": True}
        if self._model:
            params["model"] = self._model
        self.state = AcpState.AWAITING_THREAD_START
        await self._rpc.request("thread/start", params)

    async def _on_thread_started(self, result: Any) -> None:
        thread_id = extract_thread_id(result)
        if not thread_id:
            raise ProtocolError("Agent did not return a thread id for thread/start")
        self.thread_id = thread_id
        params: dict[str, Any] = {
            "threadId": thread_id,
            "input": [{"type": "text", "text": self._prompt}],
            "cwd": self._cwd,
        }
        if self._model:
            params["model"] = self._model
        self.state = AcpState.AWAITING_TURN_START
        await self._rpc.request("turn/start", params)

    async def _on_turn_started(self, result: Any) -> None:
        self.state = AcpState.STREAMING

    # -- notifications -------------------------------------------------

    async def _on_agent_delta(self, params: dict[str, Any]) -> None:
        delta = params.get("delta")
        if isinstance(delta, str) and delta:
            self.has_emitted_any_delta = True
            await self._emit(StreamEvent.delta(delta))

    async def _on_reasoning_delta(self, params: dict[str, Any]) -> None:
        delta = params.get("delta")
        if isinstance(delta, str) and delta:
            await self._emit(StreamEvent.reasoning(delta))

    async def _on_item_completed(self, params: dict[str, Any]) -> None:
        item = params.get("item")
        if not isinstance(item, dict) or item.get("type") not in ("agentMessage", "agent_message"):
            return
        text = item.get("text")
        # Fallback for agents that only report the finished message.
        if isinstance(text, str) and text and not self.has_emitted_any_delta:
            await self._emit(StreamEvent.delta(text))

    async def _on_error(self, params: dict[str, Any]) -> None:
        if params.get("willRetry"):
            _logger.info("Agent reported a transient error, it will retry: %s",
                         error_message(params) or params.get("message", ""))
            return
        message = error_message(params) or params.get("message") or "Agent reported an error."
        await self._emit(StreamEvent.error(str(message)))

    async def _on_turn_completed(self, params: dict[str, Any]) -> None:
        turn = params.get("turn") if isinstance(params.get("turn"), dict) else {}
        status = turn.get("status") or params.get("status") or "completed"
        self.state = AcpState.DONE
        if status != "completed":
            message = error_message(turn) or error_message(params) or f"Turn ended with status: {status}"
            await self._emit(StreamEvent.error(message))
        await self._emit(StreamEvent.done())


# ---------------------------------------------------------------------------
# Adapter and single-shot runtime checks
# ---------------------------------------------------------------------------

class AcpAdapter(AgentAdapter):
    """Streams one turn from the local agent runtime."""

    name = "cli-agent"

    def __init__(self, command: Sequence[str] = ACP_COMMAND) -> None:
        self._command = tuple(command)

    async def stream(self, request: RunRequest, api_key: str, emit: Emit) -> None:
        settings = request.settings
        cwd = settings.cwd
        async with JsonRpcProcess(self._command, cwd=cwd) as rpc:
            turn = AcpTurn(
                rpc,
                prompt=format_history(request.messages),
                emit=emit,
                model=settings.model.strip(),
                cwd=cwd,
            )
            await turn.begin()
            async with aclosing(rpc.messages()) as messages:
                async for message in messages:
                    await turn.handle(message)
                    if turn.state is AcpState.DONE:
                        return
        raise ProtocolError("Agent stream ended before the turn completed")


async def _handshake_then(command: Sequence[str], follow_up: str) -> Any:
    """initialize -> initialized -> *follow_up* request; return its result."""
    async with JsonRpcProcess(command) as rpc:
        init_id = await rpc.request("initialize", initialize_params())
        follow_id: int | None = None
        async with aclosing(rpc.messages()) as messages:
            async for message in messages:
                raise_for_rpc_error(message)
                if "method" in message:
                    continue
                if message.get("id") == init_id:
                    await rpc.notify("initialized")
                    follow_id = await rpc.request(follow_up, {})
                elif follow_id is not None and message.get("id") == follow_id:
                    return message.get("result")
    raise ProtocolError("Agent closed before answering")


async def list_acp_models(
    command: Sequence[str] = ACP_COMMAND,
    timeout: float = _CHECK_TIMEOUT,
) -> list[str]:
    result = await asyncio.wait_for(_handshake_then(command, "model/list"), timeout)
    return extract_model_ids(result)


async def check_acp_runtime(
    command: Sequence[str] = ACP_COMMAND,
    timeout: float = _CHECK_TIMEOUT,
) -> ConnectionTestResult:
    if not acp_available(tuple(command)):
        return ConnectionTestResult(ok=False, message=f"'{command[0]}' not found in PATH")
    try:
        await asyncio.wait_for(_handshake_then(command, "model/list"), timeout)
    except asyncio.TimeoutError:
        return ConnectionTestResult(ok=False, message="Agent runtime did not answer model/list")
    except (TransportError, RpcError) as e:
        return ConnectionTestResult(ok=False, message=str(e))
    return ConnectionTestResult(ok=True, message="Agent runtime is available.")
