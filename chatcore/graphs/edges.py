"""Edge logic for the workflow graphs."""

from typing import Literal

from chatcore.graphs.state import EvaluatorState, ParallelState, SequentialState
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


def route_after_stage(state: SequentialState, stage_count: int) -> Literal["stage", "end"]:
    """Run the next stage until every stage has produced output."""
    if state["stage_index"] < stage_count:
        return "stage"
    return "end"


def route_after_aggregate(state: ParallelState, has_synthesizer: bool) -> Literal["synthesize", "end"]:
    if has_synthesizer:
        return "synthesize"
    return "end"


def route_after_evaluation(
    state: EvaluatorState, threshold: float, max_iterations: int
) -> Literal["refine", "end"]:
    """Stop once the score reaches the threshold or iterations run out.

    A score equal to the threshold stops the loop.
    """
    if state["score"] >= threshold:
        logger.info(f"Score {state['score']:.2f} reached threshold {threshold:.2f} at iteration {state['iteration']}")
        return "end"

    if state["iteration"] >= max_iterations:
        logger.info(f"Max iterations ({max_iterations}) reached with score {state['score']:.2f}")
        return "end"

    return "refine"
