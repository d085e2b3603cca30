"""Shared fixtures: a runtime wired to a scripted provider adapter."""

import pytest

from chatcore.agents.defaults import create_default_agent_registry
from chatcore.graphs.engine import WorkflowEngine
from chatcore.models.llm import Provider
from chatcore.services.chat import ChatService
from chatcore.services.gateway import ModelGateway
from chatcore.services.model_registry import ModelRegistry
from chatcore.services.store import ConversationStore
from chatcore.tools.registry import create_default_registry
from tests.scripted import ScriptedAdapter


@pytest.fixture
def registry():
    return ModelRegistry()


@pytest.fixture
def model(registry):
    return registry.default


@pytest.fixture
def openai_model(registry):
    return registry.get("gpt-4o-mini")


@pytest.fixture
def adapter():
    return ScriptedAdapter()


@pytest.fixture
def gateway(adapter):
    return ModelGateway(adapters={Provider.ANTHROPIC: adapter, Provider.OPENAI: adapter})


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return sleep


@pytest.fixture
def tools():
    return create_default_registry()


@pytest.fixture
def agents(registry):
    return create_default_agent_registry(registry)


@pytest.fixture
def engine(gateway, model, tools, agents, fake_sleep):
    return WorkflowEngine(gateway, model, tools=tools, sleep=fake_sleep, agents=agents)


@pytest.fixture
def store():
    return ConversationStore()


@pytest.fixture
def chat(store, engine):
    return ChatService(store, engine)
