"""State definitions for the LangGraph workflow graphs."""

from typing import TypedDict


class SequentialState(TypedDict, total=False):
    """State threaded through the sequential pipeline."""

    input: str
    stage_index: int
    current_input: str
    outputs: list[str]
    output: str


class ParallelState(TypedDict, total=False):
    """State for fan-out / aggregate / synthesize."""

    input: str
    # Branch outputs in declaration order; None for failed or cancelled branches
    outputs: list[str | None]
    step_indexes: list[int | None]
    aggregated: str
    output: str


class RoutingState(TypedDict, total=False):
    """State for classify / dispatch."""

    input: str
    classification: str
    routes: list[str]
    output: str


class EvaluatorState(TypedDict, total=False):
    """State for the generate / evaluate / refine loop."""

    input: str
    iteration: int
    candidate: str
    score: float
    feedback: str
    scores: list[float]
    output: str
