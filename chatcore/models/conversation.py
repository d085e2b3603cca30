"""Conversation data models and API request/response models."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chatcore.models.llm import ModelDescriptor, Provider
from chatcore.models.messages import Message, MessageRole, MessageStatus, ToolCallRecord, utcnow
from chatcore.models.workflow import AgentDefinition


class Conversation(BaseModel):
    """Conversation metadata. Messages are held separately by the store."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = "New conversation"
    model: ModelDescriptor
    tags: tuple[str, ...] = ()
    pinned: bool = False
    archived: bool = False
    system_prompt: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_message_at: datetime | None = None
    message_count: int = 0


class ConversationSnapshot(BaseModel):
    """Everything persisted for one conversation."""

    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)


class ConversationView(BaseModel):
    """Projection delivered to conversation-scoped subscribers."""

    model_config = ConfigDict(frozen=True)

    conversation: Conversation | None
    messages: tuple[Message, ...] = ()

    @property
    def streaming_message(self) -> Message | None:
        return next((m for m in self.messages if m.status == MessageStatus.STREAMING), None)


class StoreSnapshot(BaseModel):
    """Projection delivered to store-wide subscribers."""

    model_config = ConfigDict(frozen=True)

    conversations: tuple[Conversation, ...] = ()
    streaming_conversation_ids: frozenset[str] = frozenset()


class SortField(StrEnum):
    UPDATED_AT = "updated_at"
    CREATED_AT = "created_at"
    LAST_MESSAGE_AT = "last_message_at"
    TITLE = "title"
    MESSAGE_COUNT = "message_count"


class ConversationFilter(BaseModel):
    """Read-only filter for conversation lists."""

    tags: list[str] | None = None
    pinned: bool | None = None
    archived: bool | None = None
    providers: list[Provider] | None = None
    search: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


# API models


class CreateConversationRequest(BaseModel):
    title: str | None = None
    model_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    system_prompt: str | None = None


class UpdateConversationRequest(BaseModel):
    title: str | None = None
    tags: list[str] | None = None
    pinned: bool | None = None
    archived: bool | None = None
    system_prompt: str | None = None


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)
    tools_enabled: bool = True
    # Registered agent to answer with instead of the conversation's own model and prompt
    agent_id: str | None = None


class AgentResponse(BaseModel):
    id: str
    name: str
    description: str
    capabilities: list[str]
    model_id: str | None = None
    tools: list[str] | None = None

    @classmethod
    def from_agent(cls, agent: AgentDefinition) -> "AgentResponse":
        return cls(
            id=agent.id,
            name=agent.display_name,
            description=agent.description,
            capabilities=list(agent.capabilities),
            model_id=agent.model.model_id if agent.model else None,
            tools=list(agent.tools) if agent.tools is not None else None,
        )


class MessageResponse(BaseModel):
    id: str
    role: MessageRole
    content: str
    status: MessageStatus
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    error: dict[str, Any] | None = None
    created_at: datetime

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            role=message.role,
            content=message.content,
            status=message.status,
            tool_calls=list(message.tool_calls),
            error=message.error.model_dump(mode="json") if message.error else None,
            created_at=message.created_at,
        )


class SendMessageResponse(BaseModel):
    conversation_id: str
    run_id: str
    status: str
    message: MessageResponse


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
