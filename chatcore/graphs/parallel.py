"""Parallel pattern: independent branches fan out, then aggregate and optionally synthesize."""

import asyncio
from collections.abc import Sequence
from typing import Any

from langgraph.graph import END, StateGraph

from chatcore.errors import StepLimitExceeded
from chatcore.graphs.edges import route_after_aggregate
from chatcore.graphs.runtime import StepRunner, StopRun
from chatcore.graphs.state import ParallelState
from chatcore.models.workflow import AgentDefinition, AggregationStrategy, ParallelSpec, WorkflowStep
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"


def concatenate_outputs(agents: Sequence[AgentDefinition], outputs: Sequence[str]) -> str:
    """Join outputs under per-agent headings, in branch declaration order."""
    return SECTION_SEPARATOR.join(f"## {agent.display_name}\n\n{output}" for agent, output in zip(agents, outputs))


def vote_outputs(outputs: Sequence[str]) -> str:
    """Plurality over normalized outputs; ties go to the earliest branch."""
    counts: dict[str, int] = {}
    first_seen: dict[str, str] = {}
    for output in outputs:
        key = output.strip().casefold()
        counts[key] = counts.get(key, 0) + 1
        first_seen.setdefault(key, output)

    # dicts keep insertion order, so max() keeps the earliest key on ties
    winner = max(counts, key=lambda key: counts[key])
    return first_seen[winner]


def create_parallel_graph(spec: ParallelSpec, runner: StepRunner):
    """Create the fan-out / aggregate / synthesize graph."""

    async def branches_node(state: ParallelState) -> dict[str, Any]:
        if spec.aggregation == AggregationStrategy.FIRST:
            steps = await _run_first(spec, runner, state["input"])
        else:
            steps = await _run_all(spec, runner, state["input"])
        return {
            "outputs": [s.output if s is not None else None for s in steps],
            "step_indexes": [s.index if s is not None else None for s in steps],
        }

    async def aggregate_node(state: ParallelState) -> dict[str, Any]:
        succeeded = [i for i, out in enumerate(state["outputs"]) if out is not None]
        agents = [spec.branches[i] for i in succeeded]
        outputs = [state["outputs"][i] for i in succeeded]

        match spec.aggregation:
            case AggregationStrategy.CONCATENATE:
                aggregated = concatenate_outputs(agents, outputs)
            case AggregationStrategy.VOTE:
                aggregated = vote_outputs(outputs)
            case AggregationStrategy.FIRST:
                aggregated = outputs[0]
            case AggregationStrategy.CUSTOM:
                steps = [runner.run.steps[state["step_indexes"][i]] for i in succeeded]
                aggregated = spec.reducer(outputs, steps)

        logger.debug(f"Aggregated {len(outputs)} branch output(s) with {spec.aggregation}")
        return {"aggregated": aggregated, "output": aggregated}

    async def synthesize_node(state: ParallelState) -> dict[str, Any]:
        step = await runner.run_step(
            spec.synthesizer, f"Please synthesize the following outputs:\n\n{state['aggregated']}"
        )
        return {"output": step.output}

    workflow = StateGraph(ParallelState)
    workflow.add_node("branches", branches_node)
    workflow.add_node("aggregate", aggregate_node)
    workflow.add_node("synthesize", synthesize_node)

    workflow.set_entry_point("branches")
    workflow.add_edge("branches", "aggregate")
    workflow.add_conditional_edges(
        "aggregate",
        lambda state: route_after_aggregate(state, spec.synthesizer is not None),
        {
            "synthesize": "synthesize",
            "end": END,
        },
    )
    workflow.add_edge("synthesize", END)
    return workflow.compile()


async def run_parallel(spec: ParallelSpec, input_text: str, runner: StepRunner) -> str:
    graph = create_parallel_graph(spec, runner)
    logger.debug(f"Running parallel workflow with {len(spec.branches)} branch(es), aggregation {spec.aggregation}")
    result = await graph.ainvoke({"input": input_text}, {"recursion_limit": 10})
    return result["output"]


async def _run_all(spec: ParallelSpec, runner: StepRunner, input_text: str) -> list[WorkflowStep | None]:
    results = await asyncio.gather(
        *(runner.run_step(agent, input_text) for agent in spec.branches),
        return_exceptions=True,
    )
    _raise_run_level(results)

    steps: list[WorkflowStep | None] = [r if isinstance(r, WorkflowStep) else None for r in results]
    successful = sum(1 for s in steps if s is not None)
    if successful < spec.min_successful:
        first_error = next(r for r in results if isinstance(r, BaseException))
        logger.warning(f"Only {successful}/{len(spec.branches)} branch(es) succeeded, need {spec.min_successful}")
        raise first_error
    return steps


async def _run_first(spec: ParallelSpec, runner: StepRunner, input_text: str) -> list[WorkflowStep | None]:
    tasks = [asyncio.create_task(runner.run_step(agent, input_text)) for agent in spec.branches]
    pending = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            finished = [t for t in tasks if t in done]
            _raise_run_level([t.exception() for t in finished])
            for task in finished:
                if task.exception() is None:
                    winner = tasks.index(task)
                    logger.info(f"Branch {spec.branches[winner].id} finished first, cancelling {len(pending)}")
                    return [task.result() if i == winner else None for i in range(len(tasks))]
    finally:
        for task in pending:
            task.cancel()
            task.add_done_callback(_discard_result)

    raise next(t.exception() for t in tasks)


def _raise_run_level(results: Sequence[Any]) -> None:
    """Errors that end the whole run rather than a single branch."""
    for result in results:
        if isinstance(result, StopRun | StepLimitExceeded | asyncio.CancelledError):
            raise result


def _discard_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()

