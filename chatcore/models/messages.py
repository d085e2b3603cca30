"""Message and tool call data models."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from chatcore.errors import ErrorKind


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class MessageStatus(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(UTC)


class ToolCall(BaseModel):
    """A tool call emitted by the model, before execution."""

    id: str
    tool_name: str
    raw_input: str | dict[str, Any] = ""


class ToolResult(BaseModel):
    """Outcome of one tool call."""

    id: str
    tool_name: str
    output: Any = None
    content: str = ""
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error_kind is None


class ToolCallRecord(BaseModel):
    """Tool invocation as stored on an assistant message."""

    model_config = ConfigDict(frozen=True)

    id: str
    tool_name: str
    raw_input: str | dict[str, Any] = ""
    status: Literal["running", "completed", "error"] = "running"
    result: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: float | None = None

    @classmethod
    def from_result(cls, call: ToolCall, result: ToolResult) -> "ToolCallRecord":
        return cls(
            id=call.id,
            tool_name=call.tool_name,
            raw_input=call.raw_input,
            status="completed" if result.ok else "error",
            result=result.content,
            error_kind=result.error_kind,
            duration_ms=result.duration_ms,
        )


class MessageError(BaseModel):
    """User-visible failure attached to a message."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class Message(BaseModel):
    """A message in a conversation. Replaced, never mutated, by the store."""

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    role: MessageRole
    content: str = ""
    status: MessageStatus = MessageStatus.COMPLETED
    tool_calls: tuple[ToolCallRecord, ...] = ()
    error: MessageError | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_settled(self) -> bool:
        return self.status in (MessageStatus.COMPLETED, MessageStatus.ERROR)
