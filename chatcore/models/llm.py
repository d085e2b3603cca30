"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from chatcore.errors import GatewayError


class Provider(StrEnum):
    """Closed set of supported model providers."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"


class ModelCapabilities(BaseModel):
    """What a model can do."""

    model_config = ConfigDict(frozen=True)

    streaming: bool = True
    tool_calling: bool = True
    max_tokens: int = 8192  # context window


class ModelDescriptor(BaseModel):
    """Immutable reference to a provider model."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    model_id: str
    name: str | None = None
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)
    max_output_tokens: int = 2048
    temperature: float | None = None


class LLMToolCall(BaseModel):
    """A tool call made by the assistant, with fully assembled arguments."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class LLMMessage(BaseModel):
    """A message sent to a provider."""

    role: Literal["user", "assistant", "tool", "system"]
    content: str = ""
    tool_calls: list[LLMToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None
    is_error: bool = False


class ToolSpec(BaseModel):
    """Tool schema advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class LLMUsage:
    """Token/resource usage information from LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "LLMUsage | None") -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


class GatewayEventKind(StrEnum):
    TOKEN = "token"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_DELTA = "tool_call_delta"
    TOOL_CALL_END = "tool_call_end"
    FINISH = "finish"
    ERROR = "error"


@dataclass(frozen=True)
class GatewayEvent:
    """One normalized event from a provider stream."""

    kind: GatewayEventKind
    text: str = ""
    tool_call_id: str | None = None
    tool_name: str | None = None
    stop_reason: str | None = None
    usage: LLMUsage | None = None
    error: GatewayError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (GatewayEventKind.FINISH, GatewayEventKind.ERROR)

    @classmethod
    def token(cls, text: str) -> "GatewayEvent":
        return cls(GatewayEventKind.TOKEN, text=text)

    @classmethod
    def tool_call_start(cls, tool_call_id: str, tool_name: str) -> "GatewayEvent":
        return cls(GatewayEventKind.TOOL_CALL_START, tool_call_id=tool_call_id, tool_name=tool_name)

    @classmethod
    def tool_call_delta(cls, tool_call_id: str, text: str) -> "GatewayEvent":
        return cls(GatewayEventKind.TOOL_CALL_DELTA, tool_call_id=tool_call_id, text=text)

    @classmethod
    def tool_call_end(cls, tool_call_id: str) -> "GatewayEvent":
        return cls(GatewayEventKind.TOOL_CALL_END, tool_call_id=tool_call_id)

    @classmethod
    def finish(cls, stop_reason: str | None = None, usage: LLMUsage | None = None) -> "GatewayEvent":
        return cls(GatewayEventKind.FINISH, stop_reason=stop_reason, usage=usage)

    @classmethod
    def failure(cls, error: GatewayError) -> "GatewayEvent":
        return cls(GatewayEventKind.ERROR, error=error)
