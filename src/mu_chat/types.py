"""Shared data types for mu-chat."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mu_chat.config import ProviderSettings


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Attachment:
    """An attachment already resolved to inline text or an image data URL."""

    name: str
    kind: str = "text"  # text, image, file
    mime_type: str = ""
    text_content: str = ""
    image_data_url: str = ""

    @property
    def has_payload(self) -> bool:
        if self.kind == "text":
            return bool(self.text_content.strip())
        if self.kind == "image":
            return bool(self.image_data_url.strip())
        return False


@dataclass(frozen=True)
class Message:
    """One conversation message."""

    role: Role | str
    content: str
    attachments: tuple[Attachment, ...] = ()

    @property
    def role_name(self) -> str:
        return self.role.value if isinstance(self.role, Role) else str(self.role)

    def inline_text(self) -> str:
        """Content with text attachments appended as labelled blocks."""
        blocks = [self.content] if self.content.strip() else []
        for att in self.attachments:
            if att.kind == "text" and att.has_payload:
                blocks.append(f"[Attachment: {att.name}]\n{att.text_content}")
        return "\n\n".join(blocks)

    @property
    def images(self) -> list[Attachment]:
        return [a for a in self.attachments if a.kind == "image" and a.has_payload]


@dataclass(frozen=True)
class RunRequest:
    """Settings snapshot plus message history for one user turn."""

    settings: ProviderSettings
    messages: tuple[Message, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Uniform event kinds emitted by every provider.

    The last four only come from agent providers.
    """

    DELTA = "delta"
    REASONING = "reasoning"
    DONE = "done"
    ERROR = "error"
    TOOL_START = "tool_start"
    TOOL_RESULT = "tool_result"
    PROGRESS = "task_progress"
    USAGE = "usage"


@dataclass(frozen=True)
class ToolActivity:
    """A tool call started or finished by an agent."""

    tool_id: str
    tool_name: str = "tool"
    payload: str = ""  # JSON input for a start, output text for a result
    is_error: bool = False


@dataclass(frozen=True)
class Usage:
    """Token counts reported at the end of an agent run."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_write_tokens: int | None = None

    def to_dict(self) -> dict[str, int]:
        return {
            name: value
            for name, value in (
                ("inputTokens", self.input_tokens),
                ("outputTokens", self.output_tokens),
                ("cacheReadTokens", self.cache_read_tokens),
                ("cacheWriteTokens", self.cache_write_tokens),
            )
            if value is not None
        }


@dataclass(frozen=True)
class StreamEvent:
    """One uniform streaming event."""

    type: EventType
    text: str = ""
    message: str = ""
    tool: ToolActivity | None = None
    usage: Usage | None = None

    @classmethod
    def delta(cls, text: str) -> StreamEvent:
        return cls(EventType.DELTA, text=text)

    @classmethod
    def reasoning(cls, text: str) -> StreamEvent:
        return cls(EventType.REASONING, text=text)

    @classmethod
    def done(cls) -> StreamEvent:
        return cls(EventType.DONE)

    @classmethod
    def error(cls, message: str) -> StreamEvent:
        return cls(EventType.ERROR, message=message)

    @classmethod
    def tool_start(cls, tool_id: str, tool_name: str, tool_input: str = "") -> StreamEvent:
        return cls(EventType.TOOL_START, tool=ToolActivity(tool_id, tool_name, tool_input))

    @classmethod
    def tool_result(
        cls, tool_id: str, tool_name: str, output: str = "", is_error: bool = False,
    ) -> StreamEvent:
        return cls(EventType.TOOL_RESULT, tool=ToolActivity(tool_id, tool_name, output, is_error))

    @classmethod
    def progress(cls, message: str) -> StreamEvent:
        return cls(EventType.PROGRESS, message=message)

    @classmethod
    def usage_report(cls, usage: Usage) -> StreamEvent:
        return cls(EventType.USAGE, usage=usage)

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.DONE, EventType.ERROR)

    @property
    def is_content(self) -> bool:
        return self.type in (EventType.DELTA, EventType.REASONING)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.is_content:
            data["delta"] = self.text
        elif self.type in (EventType.ERROR, EventType.PROGRESS):
            data["message"] = self.message
        elif self.tool is not None:
            data["toolId"] = self.tool.tool_id
            data["toolName"] = self.tool.tool_name
            if self.type is EventType.TOOL_START:
                data["input"] = self.tool.payload
            else:
                data["output"] = self.tool.payload
                data["isError"] = self.tool.is_error
        elif self.usage is not None:
            data["usage"] = self.usage.to_dict()
        return data


@dataclass
class StreamEnvelope:
    """An event tagged with its run and an ordering sequence number."""

    run_id: str
    seq: int
    event: StreamEvent
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "event": self.event.to_dict(),
        }


# ---------------------------------------------------------------------------
# Catalog results
# ---------------------------------------------------------------------------

@dataclass
class ModelListResult:
    ok: bool
    message: str
    models: list[str] = field(default_factory=list)


@dataclass
class ConnectionTestResult:
    ok: bool
    message: str
