"""Agent mode backed by the Claude Agent SDK.

The SDK is an optional dependency (``pip install mu-chat[agent]``); it is
imported on first use.  Messages from the SDK iterator are mapped to
stream events by duck typing so both the SDK's message classes and plain
dict messages are understood.
"""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, Callable

from mu_chat.errors import ConfigurationError
from mu_chat.providers.base import AgentAdapter, Emit
from mu_chat.providers.prompting import build_agent_prompt
from mu_chat.types import RunRequest, StreamEvent, Usage

_logger = logging.getLogger(__name__)

_MAX_TURNS = 30

# (prompt, options) -> async iterator of SDK messages
QueryFn = Callable[[str, dict[str, Any]], AsyncGenerator[Any, None]]


def load_sdk_query() -> QueryFn:
    try:
        import claude_agent_sdk
    except ImportError as e:
        raise ConfigurationError(
            "claude-agent-sdk package is required for provider_kind=sdk-agent"
        ) from e

    def _query(prompt: str, options: dict[str, Any]) -> AsyncGenerator[Any, None]:
        return claude_agent_sdk.query(
            prompt=prompt,
            options=claude_agent_sdk.ClaudeAgentOptions(**options),
        )

    return _query


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _kind(obj: Any) -> str:
    kind = _field(obj, "type")
    if isinstance(kind, str) and kind:
        return kind.lower()
    return type(obj).__name__.lower()


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _snippet(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return ""


def _number(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def extract_usage(message: Any) -> Usage | None:
    """Token counts from a message's ``usage`` mapping, if it has one."""
    usage = _field(message, "usage")
    if not isinstance(usage, dict):
        return None
    return Usage(
        input_tokens=_number(usage.get("input_tokens", usage.get("inputTokens"))),
        output_tokens=_number(usage.get("output_tokens", usage.get("outputTokens"))),
        cache_read_tokens=_number(
            usage.get("cache_read_input_tokens", usage.get("cacheReadTokens"))
        ),
        cache_write_tokens=_number(
            usage.get("cache_creation_input_tokens", usage.get("cacheWriteTokens"))
        ),
    )


def _block_events(block: Any, assistant: bool, tool_names: dict[str, str]) -> list[StreamEvent]:
    # Dict blocks carry "tool_use"; SDK classes are named ToolUseBlock.
    kind = _kind(block).replace("_", "")
    if kind.startswith("tooluse"):
        name = _text(_field(block, "name")) or "tool"
        tool_id = _text(_field(block, "id")) or name
        tool_names[tool_id] = name
        return [StreamEvent.tool_start(tool_id, name, _snippet(_field(block, "input")))]
    if kind.startswith("toolresult"):
        tool_id = _text(_field(block, "tool_use_id")) or _text(_field(block, "id")) or "tool"
        name = _text(_field(block, "name")) or tool_names.get(tool_id, "tool")
        return [StreamEvent.tool_result(
            tool_id, name, _snippet(_field(block, "content")), bool(_field(block, "is_error")),
        )]
    if not assistant:
        return []
    thinking = _field(block, "thinking")
    if isinstance(thinking, str) and thinking:
        return [StreamEvent.reasoning(thinking)]
    text = _field(block, "text")
    if isinstance(text, str) and text:
        return [StreamEvent.delta(text)]
    return []


def _message_tool_events(message: Any, kind: str) -> list[StreamEvent]:
    """Tool activity reported as a message of its own rather than a block."""
    if "tool" not in kind:
        return []
    name = _text(_field(message, "tool_name")) or _text(_field(message, "name"))
    tool_id = (
        _text(_field(message, "tool_id"))
        or _text(_field(message, "id"))
        or _text(_field(message, "tool_call_id"))
    )
    if not (name or tool_id):
        return []
    if "start" in kind or "use" in kind:
        return [StreamEvent.tool_start(
            tool_id or name, name or "tool",
            _snippet(_field(message, "input") or _field(message, "arguments")),
        )]
    if "result" in kind or "output" in kind:
        return [StreamEvent.tool_result(
            tool_id or name, name or "tool",
            _text(_field(message, "output")) or _snippet(_field(message, "result")),
            bool(_field(message, "is_error")),
        )]
    return []


def sdk_message_to_events(
    message: Any, tool_names: dict[str, str] | None = None,
) -> list[StreamEvent]:
    """Map one SDK message to stream events.

    *tool_names* remembers tool ids seen in ``tool_use`` blocks so later
    results can be labelled with the tool's name.
    """
    if tool_names is None:
        tool_names = {}
    kind = _kind(message)

    if "error" in kind or (_field(message, "is_error") and "tool" not in kind):
        err = _field(message, "error")
        text = (
            (_field(err, "message") if err is not None else None)
            or _field(message, "result")
            or _field(message, "message")
            or "Agent run failed."
        )
        return [StreamEvent.error(str(text))]

    if "result" in kind and "tool" not in kind:
        # Final summary; its text was already streamed as assistant content.
        return []

    if "progress" in kind or "status" in kind:
        for name in ("progress", "status", "state", "stage"):
            text = _text(_field(message, name))
            if text:
                return [StreamEvent.progress(text)]
        return []

    events = _message_tool_events(message, kind)
    if events:
        return events

    if "delta" in kind:
        text = _field(message, "text") or _field(message, "delta")
        if isinstance(text, str) and text:
            events.append(StreamEvent.delta(text))
        return events

    assistant = "assistant" in kind
    content = _field(message, "content")
    if isinstance(content, str):
        if content and assistant:
            events.append(StreamEvent.delta(content))
        return events
    if not isinstance(content, list) or not (assistant or "user" in kind):
        return events
    for block in content:
        events.extend(_block_events(block, assistant, tool_names))
    return events


class SdkAgentAdapter(AgentAdapter):
    """Runs one agent turn through the SDK's ``query()`` iterator."""

    name = "sdk-agent"

    def __init__(self, query_fn: QueryFn | None = None) -> None:
        self._query_fn = query_fn

    def _options(self, request: RunRequest, api_key: str) -> dict[str, Any]:
        settings = request.settings
        env = {"ANTHROPIC_API_KEY": api_key}
        if settings.normalized_base_url:
            env["ANTHROPIC_BASE_URL"] = settings.normalized_base_url
        options: dict[str, Any] = {
            "cwd": settings.cwd,
            "max_turns": _MAX_TURNS,
            "permission_mode": "default",
            "env": env,
        }
        if settings.model.strip():
            options["model"] = settings.model.strip()
        return options

    async def stream(self, request: RunRequest, api_key: str, emit: Emit) -> None:
        query = self._query_fn or load_sdk_query()
        prompt = build_agent_prompt(request.settings, request.messages)
        _logger.debug("Starting SDK agent turn in %s", request.settings.cwd)
        tool_names: dict[str, str] = {}
        usage: Usage | None = None
        async with aclosing(query(prompt, self._options(request, api_key))) as messages:
            async for message in messages:
                usage = extract_usage(message) or usage
                for event in sdk_message_to_events(message, tool_names):
                    await emit(event)
        if usage is not None:
            await emit(StreamEvent.usage_report(usage))
        await emit(StreamEvent.done())
