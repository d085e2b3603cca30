"""Main FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatcore import __version__
from chatcore.agents.defaults import create_default_agent_registry
from chatcore.api.endpoints import AppServices, router
from chatcore.clients.openai import OpenAIConfig
from chatcore.config import AppSettings
from chatcore.graphs.engine import WorkflowEngine
from chatcore.services.chat import ChatService
from chatcore.services.gateway import GatewayConfig, ModelGateway
from chatcore.services.model_registry import ModelRegistry
from chatcore.services.persistence import JsonFilePersistence, PersistenceAdapter
from chatcore.services.store import ConversationStore
from chatcore.tools.registry import create_default_registry
from chatcore.utils.logging import LogConfig, get_logger, setup_logging

logger = get_logger(__name__)


def build_services(
    settings: AppSettings,
    *,
    gateway: ModelGateway | None = None,
    persistence: PersistenceAdapter | None = None,
) -> AppServices:
    """Compose the runtime: store, gateway, tools, agents, engine and chat service."""
    registry = ModelRegistry(default_model_id=settings.default_model)
    if gateway is None:
        gateway = ModelGateway(
            GatewayConfig(
                anthropic_api_key=settings.anthropic_api_key,
                openai_api_key=settings.openai_api_key,
                openai=OpenAIConfig(base_url=settings.openai_base_url),
            )
        )
    if persistence is None and settings.data_dir is not None:
        persistence = JsonFilePersistence(settings.data_dir)

    store = ConversationStore(persistence)
    agents = create_default_agent_registry(registry)
    engine = WorkflowEngine(gateway, registry.default, tools=create_default_registry(), agents=agents)
    return AppServices(
        store=store, registry=registry, agents=agents, gateway=gateway, chat=ChatService(store, engine)
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: AppServices = app.state.services
    await services.store.load_all()
    yield
    await services.chat.shutdown()
    await services.store.flush()
    await services.gateway.aclose()
    logger.info("Shutdown complete")


def create_app(
    settings: AppSettings | None = None,
    *,
    gateway: ModelGateway | None = None,
    persistence: PersistenceAdapter | None = None,
) -> FastAPI:
    """Create the FastAPI application with its own runtime instance."""
    settings = settings or AppSettings.from_env()
    setup_logging(LogConfig(level=settings.log_level))

    app = FastAPI(
        title="chatcore",
        description="Agentic workflow and streaming conversation runtime over multiple model providers.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        tags_metadata=[
            {"name": "Conversations", "description": "Create, list, update, export and import conversations."},
            {"name": "Messages", "description": "Send messages and cancel in-flight generations."},
            {"name": "Models", "description": "Models available to conversations."},
            {"name": "Health", "description": "Service health monitoring and status checks."},
        ],
    )
    app.state.services = build_services(settings, gateway=gateway, persistence=persistence)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chatcore.main:create_app", factory=True, host="0.0.0.0", port=8000, log_level="info")
