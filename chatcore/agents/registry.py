"""Agent registry: named, reusable agent definitions that workflows refer to by id."""

import dataclasses
from collections.abc import Callable, Iterable

from chatcore.errors import DuplicateAgentError, NotFoundError
from chatcore.models.llm import Provider
from chatcore.models.workflow import (
    AgentDefinition,
    AgentRef,
    EvaluatorOptimizerSpec,
    ParallelSpec,
    RoutingSpec,
    SequentialSpec,
    WorkflowSpec,
)
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


def validate_agent(agent: AgentDefinition) -> None:
    """Check an agent definition before it is registered.

    Raises:
        ValueError: If a required field is blank or the model settings are out of range
    """
    if not agent.id.strip():
        raise ValueError("Agent id is required")
    if not agent.system_prompt.strip():
        raise ValueError(f"Agent {agent.id} needs a system prompt")
    if agent.max_tool_rounds < 0:
        raise ValueError(f"Agent {agent.id}: max_tool_rounds must not be negative")
    model = agent.model
    if model is not None and model.temperature is not None and not 0 <= model.temperature <= 2:
        raise ValueError(f"Agent {agent.id}: temperature must be between 0 and 2")


class AgentRegistry:
    """Registry of agent definitions keyed by id, indexed by capability."""

    def __init__(self, agents: Iterable[AgentDefinition] = ()):
        self._agents: dict[str, AgentDefinition] = {}
        self._by_capability: dict[str, set[str]] = {}
        for agent in agents:
            self.register_agent(agent)

    def register_agent(self, agent: AgentDefinition) -> None:
        """Register a new agent.

        Raises:
            DuplicateAgentError: If an agent with the same id already exists
            ValueError: If the definition is invalid
        """
        if agent.id in self._agents:
            raise DuplicateAgentError(f"Agent '{agent.id}' is already registered")
        validate_agent(agent)
        self._agents[agent.id] = agent
        for capability in agent.capabilities:
            self._by_capability.setdefault(capability, set()).add(agent.id)
        logger.debug(f"Registered agent {agent.id} ({agent.display_name})")

    def unregister_agent(self, agent_id: str) -> bool:
        """Remove an agent. Returns False if it was not registered."""
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return False
        for capability in agent.capabilities:
            ids = self._by_capability.get(capability)
            if ids is not None:
                ids.discard(agent_id)
                if not ids:
                    del self._by_capability[capability]
        logger.debug(f"Unregistered agent {agent_id}")
        return True

    def get_agent(self, agent_id: str) -> AgentDefinition | None:
        return self._agents.get(agent_id)

    def require_agent(self, agent_id: str) -> AgentDefinition:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"Unknown agent: {agent_id}")
        return agent

    def has_agent(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def list_agents(self, predicate: Callable[[AgentDefinition], bool] | None = None) -> list[AgentDefinition]:
        """All agents in registration order, optionally filtered."""
        agents = list(self._agents.values())
        return [a for a in agents if predicate(a)] if predicate is not None else agents

    def find_by_capability(self, capability: str) -> list[AgentDefinition]:
        ids = self._by_capability.get(capability, set())
        return [a for a in self._agents.values() if a.id in ids]

    def find_by_capabilities(self, capabilities: Iterable[str]) -> list[AgentDefinition]:
        """Agents having every one of ``capabilities``. No capabilities matches nothing."""
        wanted = set(capabilities)
        if not wanted:
            return []
        return [a for a in self._agents.values() if wanted <= set(a.capabilities)]

    def find_by_provider(self, provider: Provider) -> list[AgentDefinition]:
        return self.list_agents(lambda a: a.model is not None and a.model.provider == provider)

    def search(self, query: str, include_description: bool = True) -> list[AgentDefinition]:
        """Case-insensitive match on display name, and description unless disabled."""
        needle = query.casefold()

        def matches(agent: AgentDefinition) -> bool:
            if needle in agent.display_name.casefold():
                return True
            return include_description and needle in agent.description.casefold()

        return self.list_agents(matches)

    def get_capabilities(self) -> list[str]:
        return sorted(self._by_capability)

    def __len__(self) -> int:
        return len(self._agents)

    def resolve(self, ref: AgentRef) -> AgentDefinition:
        """Turn an agent id into its definition; inline definitions pass through.

        Raises:
            NotFoundError: If ``ref`` is an id that is not registered
        """
        return ref if isinstance(ref, AgentDefinition) else self.require_agent(ref)


def resolve_spec(spec: WorkflowSpec, agents: AgentRegistry | None) -> WorkflowSpec:
    """Return ``spec`` with every agent id replaced by its registered definition.

    Raises:
        NotFoundError: If ``spec`` names an agent id that cannot be resolved
    """
    registry = agents if agents is not None else AgentRegistry()

    def one(ref: AgentRef | None) -> AgentDefinition | None:
        return registry.resolve(ref) if ref is not None else None

    match spec:
        case SequentialSpec():
            stages = [dataclasses.replace(s, agent=one(s.agent)) for s in spec.stages]
            return dataclasses.replace(spec, stages=stages)
        case ParallelSpec():
            return dataclasses.replace(
                spec, branches=[one(b) for b in spec.branches], synthesizer=one(spec.synthesizer)
            )
        case RoutingSpec():
            handlers = [dataclasses.replace(h, agent=one(h.agent)) for h in spec.handlers]
            return dataclasses.replace(
                spec, classifier=one(spec.classifier), handlers=handlers, fallback=one(spec.fallback)
            )
        case EvaluatorOptimizerSpec():
            return dataclasses.replace(
                spec,
                generator=one(spec.generator),
                evaluator=one(spec.evaluator),
                optimizer=one(spec.optimizer),
            )
    raise TypeError(f"Unsupported workflow spec: {type(spec).__name__}")
