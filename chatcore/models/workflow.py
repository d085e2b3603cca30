"""Workflow run records and pattern configuration."""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from chatcore.errors import ErrorKind, HandlerNotFound
from chatcore.models.llm import ModelDescriptor
from chatcore.models.messages import ToolCallRecord, utcnow


class WorkflowPattern(StrEnum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    ROUTING = "routing"
    EVALUATOR_OPTIMIZER = "evaluator_optimizer"


class RunStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(StrEnum):
    RUNNING = "running"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkflowStep:
    """One agent invocation inside a run."""

    index: int
    agent_id: str
    input: str
    output: str = ""
    tokens_used: int = 0
    duration_ms: float = 0.0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    error: ErrorKind | None = None
    error_message: str | None = None


@dataclass
class WorkflowRun:
    """State of one orchestration invocation, owned by the engine."""

    id: str
    pattern: WorkflowPattern
    steps: list[WorkflowStep] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    output: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def completed_steps(self) -> list[WorkflowStep]:
        return [s for s in self.steps if s.error is None]

    @property
    def total_tokens(self) -> int:
        return sum(s.tokens_used for s in self.steps)


@dataclass(frozen=True)
class ProgressEvent:
    """Step-level progress delivered to UI consumers."""

    step_index: int
    agent_id: str
    status: StepStatus
    partial_output: str | None = None


StopCondition = Callable[[WorkflowStep], bool]


@dataclass(frozen=True)
class AgentDefinition:
    """A role-specific model invocation."""

    id: str
    system_prompt: str = ""
    name: str | None = None
    description: str = ""
    capabilities: Sequence[str] = ()
    model: ModelDescriptor | None = None
    # None: no tools advertised; empty list: every registered tool
    tools: Sequence[str] | None = None
    tool_mode: Literal["parallel", "sequential"] = "parallel"
    max_tool_rounds: int = 5

    @property
    def display_name(self) -> str:
        return self.name or self.id


# Agents are given inline or by id, resolved against an AgentRegistry when a run starts
AgentRef = AgentDefinition | str


@dataclass
class WorkflowLimits:
    """Loop-control primitives applied to every pattern."""

    max_steps: int = 25
    timeout_ms: int | None = 120_000
    stop_condition: StopCondition | None = None


@dataclass
class SequentialStage:
    agent: AgentRef
    # (output, stage_index) -> text handed to the next stage
    transform: Callable[[str, int], str] | None = None


@dataclass
class SequentialSpec:
    stages: list[SequentialStage]
    include_previous_context: bool = False
    limits: WorkflowLimits = field(default_factory=WorkflowLimits)
    pattern: WorkflowPattern = field(default=WorkflowPattern.SEQUENTIAL, init=False)

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError("A sequential workflow needs at least one stage")

    @classmethod
    def single(cls, agent: AgentRef, limits: WorkflowLimits | None = None) -> "SequentialSpec":
        return cls(stages=[SequentialStage(agent)], limits=limits or WorkflowLimits())


class AggregationStrategy(StrEnum):
    CONCATENATE = "concatenate"
    VOTE = "vote"
    FIRST = "first"
    CUSTOM = "custom"


@dataclass
class ParallelSpec:
    branches: list[AgentRef]
    aggregation: AggregationStrategy = AggregationStrategy.CONCATENATE
    # (outputs in branch order, steps) -> aggregated output
    reducer: Callable[[list[str], list[WorkflowStep]], str] | None = None
    synthesizer: AgentRef | None = None
    min_successful: int = 1
    limits: WorkflowLimits = field(default_factory=WorkflowLimits)
    pattern: WorkflowPattern = field(default=WorkflowPattern.PARALLEL, init=False)

    def __post_init__(self) -> None:
        if not self.branches:
            raise ValueError("A parallel workflow needs at least one branch")
        if self.aggregation == AggregationStrategy.CUSTOM and self.reducer is None:
            raise ValueError("Custom aggregation requires a reducer")
        if not 1 <= self.min_successful <= len(self.branches):
            raise ValueError("min_successful must be between 1 and the number of branches")


@dataclass
class RouteHandler:
    name: str
    agent: AgentRef
    description: str = ""
    triggers: Sequence[str] = ()


@dataclass
class RoutingSpec:
    classifier: AgentRef
    handlers: list[RouteHandler]
    fallback: AgentRef | None = None
    classification_prompt: str | None = None
    include_routing_note: bool = False
    allow_multiple_routes: bool = False
    max_routes: int | None = None
    limits: WorkflowLimits = field(default_factory=WorkflowLimits)
    pattern: WorkflowPattern = field(default=WorkflowPattern.ROUTING, init=False)

    def __post_init__(self) -> None:
        if self.fallback is None:
            raise HandlerNotFound("A routing workflow requires a fallback handler")
        names = [h.name for h in self.handlers]
        if len(names) != len(set(names)):
            raise ValueError("Route handler names must be unique")
        if "fallback" in names:
            raise ValueError("'fallback' is reserved for the fallback handler")


@dataclass
class EvaluatorOptimizerSpec:
    generator: AgentRef
    evaluator: AgentRef
    optimizer: AgentRef | None = None
    threshold: float = 0.9
    max_iterations: int = 3
    evaluation_criteria: str | None = None
    score_parser: Callable[[str], float] | None = None
    limits: WorkflowLimits = field(default_factory=WorkflowLimits)
    pattern: WorkflowPattern = field(default=WorkflowPattern.EVALUATOR_OPTIMIZER, init=False)

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")


WorkflowSpec = SequentialSpec | ParallelSpec | RoutingSpec | EvaluatorOptimizerSpec
