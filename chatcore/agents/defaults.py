"""Built-in agents available to every workflow by id."""

from chatcore.agents.registry import AgentRegistry
from chatcore.models.workflow import AgentDefinition
from chatcore.services.model_registry import ModelRegistry
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


def default_agents(models: ModelRegistry | None = None) -> list[AgentDefinition]:
    """Research, code, creative and analyst agents, each pinned to a model and temperature."""
    models = models or ModelRegistry()

    def model(model_id: str, temperature: float):
        return models.get(model_id).model_copy(update={"temperature": temperature})

    return [
        AgentDefinition(
            id="research-agent",
            name="Research Agent",
            description="Gathers information and conducts research",
            system_prompt=(
                "You are a research specialist. Gather comprehensive information, analyze sources "
                "and give well-researched answers. Focus on accuracy and cite your sources."
            ),
            capabilities=("research", "analysis", "fact-checking"),
            model=model("claude-3-5-sonnet-20241022", 0.3),
            tools=["search_web"],
        ),
        AgentDefinition(
            id="code-agent",
            name="Code Agent",
            description="Writes and reviews code",
            system_prompt=(
                "You are a senior software engineer. Write clean, efficient, well-documented code, "
                "consider edge cases and explain your reasoning."
            ),
            capabilities=("coding", "debugging", "code-review"),
            model=model("claude-3-opus-20240229", 0.1),
        ),
        AgentDefinition(
            id="creative-agent",
            name="Creative Agent",
            description="Creative writing and brainstorming",
            system_prompt=(
                "You are a creative writer and ideation specialist. Generate original ideas and "
                "craft engaging narratives."
            ),
            capabilities=("creative-writing", "brainstorming", "storytelling"),
            model=model("gpt-4-turbo", 0.9),
        ),
        AgentDefinition(
            id="analyst-agent",
            name="Analyst Agent",
            description="Data analysis and critical thinking",
            system_prompt=(
                "You are a data analyst. Analyze information objectively, identify patterns and "
                "give data-driven insights."
            ),
            capabilities=("analysis", "data-processing", "critical-thinking"),
            model=model("claude-3-5-sonnet-20241022", 0.2),
            tools=["calculate"],
        ),
    ]


def create_default_agent_registry(models: ModelRegistry | None = None) -> AgentRegistry:
    """Registry holding the built-in agents."""
    registry = AgentRegistry(default_agents(models))
    logger.info(f"Registered {len(registry)} default agents")
    return registry
