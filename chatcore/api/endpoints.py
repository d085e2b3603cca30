"""API endpoints for the conversation runtime."""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from chatcore import __version__
from chatcore.agents.registry import AgentRegistry
from chatcore.errors import ChatCoreError, ErrorKind
from chatcore.models.conversation import (
    AgentResponse,
    Conversation,
    ConversationFilter,
    CreateConversationRequest,
    HealthResponse,
    MessageResponse,
    SendMessageRequest,
    SendMessageResponse,
    SortField,
    UpdateConversationRequest,
)
from chatcore.models.llm import ModelDescriptor, Provider
from chatcore.models.workflow import SequentialSpec
from chatcore.services.chat import ChatService
from chatcore.services.export import ExportFormat, export_conversation, import_conversations
from chatcore.services.gateway import ModelGateway
from chatcore.services.model_registry import ModelRegistry
from chatcore.services.store import ConversationStore
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONCURRENT_GENERATION: 409,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.AUTH_ERROR: 502,
    ErrorKind.MALFORMED: 502,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.WORKFLOW_TIMEOUT: 504,
}


@dataclass
class AppServices:
    """Everything the endpoints need, composed once per application."""

    store: ConversationStore
    registry: ModelRegistry
    agents: AgentRegistry
    gateway: ModelGateway
    chat: ChatService


def get_services(request: Request) -> AppServices:
    return request.app.state.services


Services = Annotated[AppServices, Depends(get_services)]


def http_error(error: ChatCoreError) -> HTTPException:
    """Map a runtime error to an HTTP error carrying only its user-facing summary."""
    return HTTPException(status_code=STATUS_BY_KIND.get(error.kind, 500), detail=error.as_dict())


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy", timestamp=datetime.now(UTC), version=__version__)


@router.get("/models", response_model=list[ModelDescriptor], tags=["Models"])
async def list_models(services: Services, provider: Provider | None = None) -> list[ModelDescriptor]:
    return services.registry.list_models(provider)


@router.get("/agents", response_model=list[AgentResponse], tags=["Agents"])
async def list_agents(
    services: Services, capability: Annotated[list[str] | None, Query()] = None, search: str | None = None
) -> list[AgentResponse]:
    """List registered agents, optionally those having every given capability."""
    agents = services.agents.find_by_capabilities(capability) if capability else services.agents.list_agents()
    if search:
        found = {a.id for a in services.agents.search(search)}
        agents = [a for a in agents if a.id in found]
    return [AgentResponse.from_agent(a) for a in agents]


@router.post("/conversations", response_model=Conversation, status_code=201, tags=["Conversations"])
async def create_conversation(request: CreateConversationRequest, services: Services) -> Conversation:
    try:
        model = services.registry.get(request.model_id)
    except ChatCoreError as e:
        raise http_error(e) from e
    return services.store.create_conversation(
        model, title=request.title, tags=request.tags, system_prompt=request.system_prompt
    )


@router.get("/conversations", response_model=list[Conversation], tags=["Conversations"])
async def list_conversations(
    services: Services,
    search: str | None = None,
    tag: Annotated[list[str] | None, Query()] = None,
    pinned: bool | None = None,
    archived: bool | None = None,
    include_archived: bool = False,
    sort: SortField = SortField.UPDATED_AT,
    descending: bool = True,
    offset: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> list[Conversation]:
    """List conversations, newest first by default. Archived ones are hidden unless asked for."""
    filter = ConversationFilter(search=search, tags=tag, pinned=pinned, archived=archived)
    return services.store.list_conversations(
        filter, sort=sort, descending=descending, offset=offset, limit=limit, include_archived=include_archived
    )


@router.post("/conversations/import", tags=["Conversations"])
async def import_conversation_data(request: Request, services: Services):
    """Import a JSON export. Colliding ids are replaced with fresh ones."""
    data = (await request.body()).decode()
    try:
        result = import_conversations(services.store, data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid import data: {e}") from e
    return {
        "conversation_ids": result.conversation_ids,
        "message_count": result.message_count,
        "errors": result.errors,
    }


@router.get("/conversations/{conversation_id}", response_model=Conversation, tags=["Conversations"])
async def get_conversation(conversation_id: str, services: Services) -> Conversation:
    try:
        return services.store.require_conversation(conversation_id)
    except ChatCoreError as e:
        raise http_error(e) from e


@router.patch("/conversations/{conversation_id}", response_model=Conversation, tags=["Conversations"])
async def update_conversation(
    conversation_id: str, request: UpdateConversationRequest, services: Services
) -> Conversation:
    changes = request.model_dump(exclude_none=True)
    try:
        if not changes:
            return services.store.require_conversation(conversation_id)
        return services.store.set_conversation_meta(conversation_id, **changes)
    except ChatCoreError as e:
        raise http_error(e) from e


@router.delete("/conversations/{conversation_id}", status_code=204, tags=["Conversations"])
async def delete_conversation(conversation_id: str, services: Services) -> Response:
    services.chat.cancel(conversation_id)
    if not services.store.delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return Response(status_code=204)


@router.get(
    "/conversations/{conversation_id}/messages", response_model=list[MessageResponse], tags=["Messages"]
)
async def get_messages(conversation_id: str, services: Services) -> list[MessageResponse]:
    try:
        messages = services.store.get_messages(conversation_id)
    except ChatCoreError as e:
        raise http_error(e) from e
    return [MessageResponse.from_message(m) for m in messages]


@router.post(
    "/conversations/{conversation_id}/messages", response_model=SendMessageResponse, tags=["Messages"]
)
async def send_message(conversation_id: str, request: SendMessageRequest, services: Services) -> SendMessageResponse:
    """Send a user message and wait for the assistant reply to settle.

    A failed generation still returns 200; the reply carries the error.
    """
    logger.info(f"Sending message to conversation {conversation_id}: {request.content[:50]}...")
    try:
        spec = SequentialSpec.single(request.agent_id) if request.agent_id else None
        message, run = await services.chat.send(
            conversation_id, request.content, spec=spec, tools_enabled=request.tools_enabled
        )
    except ChatCoreError as e:
        logger.warning(f"Send to conversation {conversation_id} rejected: {e}")
        raise http_error(e) from e

    logger.info(f"Run {run.id} for conversation {conversation_id} ended {run.status}")
    return SendMessageResponse(
        conversation_id=conversation_id,
        run_id=run.id,
        status=run.status,
        message=MessageResponse.from_message(message),
    )


@router.post("/conversations/{conversation_id}/cancel", tags=["Messages"])
async def cancel_generation(conversation_id: str, services: Services):
    try:
        services.store.require_conversation(conversation_id)
    except ChatCoreError as e:
        raise http_error(e) from e
    return {"cancelled": services.chat.cancel(conversation_id)}


@router.get("/conversations/{conversation_id}/export", tags=["Conversations"])
async def export(conversation_id: str, services: Services, format: ExportFormat = ExportFormat.JSON) -> Response:
    try:
        result = export_conversation(services.store, conversation_id, format)
    except ChatCoreError as e:
        raise http_error(e) from e
    return Response(
        content=result.content,
        media_type=result.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )
