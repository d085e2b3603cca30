"""Tests for the agent registry and resolving agents by id."""

import pytest

from chatcore.agents.defaults import default_agents
from chatcore.agents.registry import AgentRegistry, resolve_spec
from chatcore.errors import DuplicateAgentError, NotFoundError
from chatcore.models.llm import Provider
from chatcore.models.workflow import (
    AgentDefinition,
    EvaluatorOptimizerSpec,
    ParallelSpec,
    RouteHandler,
    RoutingSpec,
    RunStatus,
    SequentialSpec,
)
from tests.scripted import reply


def agent(agent_id, *capabilities, **kwargs):
    return AgentDefinition(id=agent_id, system_prompt=f"You are {agent_id}.", capabilities=capabilities, **kwargs)


@pytest.fixture
def catalog():
    return AgentRegistry(
        [
            agent("writer", "writing", "editing", name="Copy Writer", description="Drafts marketing text"),
            agent("editor", "editing"),
            agent("checker", "fact-checking", description="Verifies claims in a draft"),
        ]
    )


class TestAgentRegistry:
    """Tests for registering and finding agents."""

    def test_register_and_get(self, catalog):
        assert catalog.has_agent("writer")
        assert catalog.get_agent("writer").display_name == "Copy Writer"
        assert catalog.get_agent("missing") is None
        assert len(catalog) == 3

    def test_duplicate_id_rejected(self, catalog):
        """Test that registering an existing id raises instead of replacing it."""
        with pytest.raises(DuplicateAgentError):
            catalog.register_agent(agent("writer"))
        assert catalog.get_agent("writer").name == "Copy Writer"

    @pytest.mark.parametrize(
        "definition",
        [
            AgentDefinition(id=" ", system_prompt="x"),
            AgentDefinition(id="blank", system_prompt="  "),
            AgentDefinition(id="negative", system_prompt="x", max_tool_rounds=-1),
        ],
    )
    def test_invalid_definitions_rejected(self, definition):
        with pytest.raises(ValueError):
            AgentRegistry().register_agent(definition)

    def test_temperature_out_of_range_rejected(self, model):
        """Test that a model temperature above 2 is refused."""
        hot = AgentDefinition(id="hot", system_prompt="x", model=model.model_copy(update={"temperature": 2.5}))
        with pytest.raises(ValueError):
            AgentRegistry().register_agent(hot)

    def test_unregister_drops_capability_index(self, catalog):
        """Test that removing an agent also removes capabilities only it provided."""
        assert catalog.unregister_agent("checker")
        assert not catalog.unregister_agent("checker")
        assert catalog.find_by_capability("fact-checking") == []
        assert "fact-checking" not in catalog.get_capabilities()

    def test_require_unknown_agent(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.require_agent("missing")

    def test_find_by_capability(self, catalog):
        assert [a.id for a in catalog.find_by_capability("editing")] == ["writer", "editor"]
        assert catalog.find_by_capability("coding") == []

    def test_find_by_capabilities_requires_all(self, catalog):
        """Test that multiple capabilities match only agents having every one."""
        assert [a.id for a in catalog.find_by_capabilities(["editing", "writing"])] == ["writer"]
        assert catalog.find_by_capabilities([]) == []

    def test_get_capabilities_sorted(self, catalog):
        assert catalog.get_capabilities() == ["editing", "fact-checking", "writing"]

    def test_search(self, catalog):
        """Test that search matches names and, unless disabled, descriptions."""
        assert [a.id for a in catalog.search("copy")] == ["writer"]
        assert [a.id for a in catalog.search("CLAIMS")] == ["checker"]
        assert catalog.search("claims", include_description=False) == []

    def test_list_agents_with_predicate(self, catalog):
        assert [a.id for a in catalog.list_agents(lambda a: not a.description)] == ["editor"]


class TestDefaultAgents:
    """Tests for the built-in agents."""

    def test_defaults_register_cleanly(self, agents):
        assert [a.id for a in agents.list_agents()] == [
            "research-agent",
            "code-agent",
            "creative-agent",
            "analyst-agent",
        ]

    def test_analysis_shared_by_research_and_analyst(self, agents):
        assert [a.id for a in agents.find_by_capability("analysis")] == ["research-agent", "analyst-agent"]

    def test_models_pinned_with_temperature(self):
        """Test that each default agent carries its own model and temperature."""
        by_id = {a.id: a for a in default_agents()}
        assert by_id["code-agent"].model.model_id == "claude-3-opus-20240229"
        assert by_id["code-agent"].model.temperature == 0.1
        assert by_id["creative-agent"].model.temperature == 0.9

    def test_find_by_provider(self, agents):
        assert [a.id for a in agents.find_by_provider(Provider.OPENAI)] == ["creative-agent"]


class TestResolveSpec:
    """Tests for replacing agent ids in workflow specs."""

    def test_ids_replaced_in_every_slot(self, catalog):
        """Test that ids are resolved in routing handlers, classifier and fallback."""
        spec = RoutingSpec(
            classifier="checker",
            handlers=[RouteHandler("draft", "writer", "Writing requests")],
            fallback="editor",
        )

        resolved = resolve_spec(spec, catalog)

        assert resolved.classifier is catalog.get_agent("checker")
        assert resolved.handlers[0].agent is catalog.get_agent("writer")
        assert resolved.fallback is catalog.get_agent("editor")
        assert spec.classifier == "checker"

    def test_inline_definitions_pass_through(self, catalog):
        inline = agent("inline")
        spec = ParallelSpec(branches=[inline, "editor"])

        resolved = resolve_spec(spec, catalog)

        assert resolved.branches == [inline, catalog.get_agent("editor")]
        assert resolved.synthesizer is None

    def test_optional_optimizer_stays_unset(self, catalog):
        resolved = resolve_spec(EvaluatorOptimizerSpec(generator="writer", evaluator="checker"), catalog)
        assert resolved.generator.id == "writer"
        assert resolved.optimizer is None

    def test_unknown_id(self, catalog):
        with pytest.raises(NotFoundError):
            resolve_spec(SequentialSpec.single("ghost"), catalog)

    def test_ids_without_registry(self):
        """Test that an id cannot be resolved when no registry is configured."""
        with pytest.raises(NotFoundError):
            resolve_spec(SequentialSpec.single("writer"), None)


class TestRunningByAgentId:
    """Tests for running workflows that name registered agents."""

    @pytest.mark.asyncio
    async def test_engine_runs_registered_agent(self, engine, adapter, agents):
        """Test that an agent id runs with the registered prompt and model."""
        adapter.script.append(reply("def add(a, b): return a + b"))

        run = await engine.run(SequentialSpec.single("code-agent"), "Write add()")

        assert run.status == RunStatus.COMPLETED
        assert run.steps[0].agent_id == "code-agent"
        assert adapter.calls[0]["system_prompt"] == agents.get_agent("code-agent").system_prompt
        assert adapter.calls[0]["model"] == "claude-3-opus-20240229"

    @pytest.mark.asyncio
    async def test_engine_rejects_unknown_agent(self, engine, adapter):
        with pytest.raises(NotFoundError):
            engine.start(SequentialSpec.single("ghost"), "hello")
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_chat_unknown_agent_leaves_no_messages(self, chat, store, model):
        """Test that a send naming an unknown agent fails before anything is stored."""
        conversation = store.create_conversation(model)

        with pytest.raises(NotFoundError):
            await chat.send(conversation.id, "hello", spec=SequentialSpec.single("ghost"))

        assert store.get_messages(conversation.id) == []
        assert not chat.is_generating(conversation.id)
