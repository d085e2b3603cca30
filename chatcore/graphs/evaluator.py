"""Evaluator-optimizer pattern: generate, score, refine until good enough or out of iterations."""

import re
from typing import Any

from langgraph.graph import END, StateGraph

from chatcore.graphs.edges import route_after_evaluation
from chatcore.graphs.runtime import StepRunner
from chatcore.graphs.state import EvaluatorState
from chatcore.models.workflow import EvaluatorOptimizerSpec
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

_SCORE = re.compile(r"score\s*[:=]\s*(\d+(?:\.\d+)?)(?:\s*/\s*(\d+))?", re.IGNORECASE)
_RATIO = re.compile(r"(\d+(?:\.\d+)?)\s*/\s*(100|10)\b")
_FEEDBACK = re.compile(r"feedback\s*:\s*(.+)", re.IGNORECASE | re.DOTALL)


def normalize_score(value: float) -> float:
    """Scale 0-100 scores to 0-1 and clamp."""
    if value > 1:
        value = value / 100
    return min(max(value, 0.0), 1.0)


def parse_score(text: str) -> float:
    """Read a quality score from evaluator output.

    Understands ``SCORE: 0.8``, ``SCORE: 85``, ``Score: 8/10`` and ``85/100``.
    Output without a score counts as 0.
    """
    if match := _SCORE.search(text):
        value = float(match.group(1))
        if match.group(2):
            return normalize_score(value / float(match.group(2)))
        return normalize_score(value)
    if match := _RATIO.search(text):
        return normalize_score(float(match.group(1)) / float(match.group(2)))
    logger.warning("No score found in evaluator output, treating as 0")
    return 0.0


def parse_feedback(text: str) -> str:
    if match := _FEEDBACK.search(text):
        return match.group(1).strip()
    return text.strip()


def build_evaluation_prompt(spec: EvaluatorOptimizerSpec, request: str, candidate: str) -> str:
    prompt = f"Evaluate the following output.\n\nOriginal Request: {request}\n\nOutput:\n{candidate}\n\n"
    if spec.evaluation_criteria:
        prompt += f"Criteria:\n{spec.evaluation_criteria}\n\n"
    return prompt + "Respond in the format: SCORE: [0-100] FEEDBACK: [text]"


def build_refinement_prompt(request: str, candidate: str, score: float, feedback: str) -> str:
    return (
        f"Original Request: {request}\n\n"
        f"Current Output:\n{candidate}\n\n"
        f"Evaluation Feedback (Score: {score * 100:.0f}/100):\n{feedback}\n\n"
        "Please refine the output to address the feedback and improve quality."
    )


def create_evaluator_graph(spec: EvaluatorOptimizerSpec, runner: StepRunner):
    """Create the generate / evaluate / refine loop."""
    optimizer = spec.optimizer or spec.generator

    async def generate_node(state: EvaluatorState) -> dict[str, Any]:
        step = await runner.run_step(spec.generator, state["input"])
        return {"iteration": 1, "candidate": step.output, "output": step.output}

    async def evaluate_node(state: EvaluatorState) -> dict[str, Any]:
        step = await runner.run_step(spec.evaluator, build_evaluation_prompt(spec, state["input"], state["candidate"]))
        if spec.score_parser is not None:
            score = normalize_score(spec.score_parser(step.output))
        else:
            score = parse_score(step.output)
        scores = [*state.get("scores", []), score]
        runner.run.metadata["scores"] = scores
        logger.info(f"Iteration {state['iteration']} scored {score:.2f}")
        return {"score": score, "feedback": parse_feedback(step.output), "scores": scores}

    async def refine_node(state: EvaluatorState) -> dict[str, Any]:
        prompt = build_refinement_prompt(state["input"], state["candidate"], state["score"], state["feedback"])
        step = await runner.run_step(optimizer, prompt)
        return {"iteration": state["iteration"] + 1, "candidate": step.output, "output": step.output}

    workflow = StateGraph(EvaluatorState)
    workflow.add_node("generate", generate_node)
    workflow.add_node("evaluate", evaluate_node)
    workflow.add_node("refine", refine_node)

    workflow.set_entry_point("generate")
    workflow.add_edge("generate", "evaluate")
    workflow.add_conditional_edges(
        "evaluate",
        lambda state: route_after_evaluation(state, spec.threshold, spec.max_iterations),
        {
            "refine": "refine",
            "end": END,
        },
    )
    workflow.add_edge("refine", "evaluate")
    return workflow.compile()


async def run_evaluator_optimizer(spec: EvaluatorOptimizerSpec, input_text: str, runner: StepRunner) -> str:
    graph = create_evaluator_graph(spec, runner)
    result = await graph.ainvoke(
        {"input": input_text, "iteration": 0, "scores": []},
        {"recursion_limit": spec.max_iterations * 2 + 5},
    )
    return result["output"]
