"""Sequential pattern: stages run strictly in order, each feeding the next."""

from typing import Any

from langgraph.graph import END, StateGraph

from chatcore.graphs.edges import route_after_stage
from chatcore.graphs.runtime import StepRunner, StepSink
from chatcore.graphs.state import SequentialState
from chatcore.models.workflow import SequentialSpec
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


def create_sequential_graph(spec: SequentialSpec, runner: StepRunner, sink: StepSink | None = None):
    """Create the sequential pipeline graph.

    ``sink`` receives the live output of the final stage only.
    """
    stage_count = len(spec.stages)

    async def stage_node(state: SequentialState) -> dict[str, Any]:
        index = state["stage_index"]
        stage = spec.stages[index]
        is_last = index == stage_count - 1

        step = await runner.run_step(stage.agent, state["current_input"], sink=sink if is_last else None)

        output = step.output
        if stage.transform is not None:
            output = stage.transform(output, index)
        outputs = [*state["outputs"], output]

        if spec.include_previous_context and not is_last:
            previous = "\n\n".join(
                f"Step {i + 1} ({spec.stages[i].agent.display_name}): {text}" for i, text in enumerate(outputs)
            )
            next_input = f"{previous}\n\nNow process the following:\n{state['input']}"
        else:
            next_input = output

        return {"stage_index": index + 1, "current_input": next_input, "outputs": outputs, "output": output}

    workflow = StateGraph(SequentialState)
    workflow.add_node("stage", stage_node)
    workflow.set_entry_point("stage")
    workflow.add_conditional_edges(
        "stage",
        lambda state: route_after_stage(state, stage_count),
        {
            "stage": "stage",
            "end": END,
        },
    )
    return workflow.compile()


async def run_sequential(
    spec: SequentialSpec, input_text: str, runner: StepRunner, sink: StepSink | None = None
) -> str:
    graph = create_sequential_graph(spec, runner, sink)
    logger.debug(f"Running sequential workflow with {len(spec.stages)} stage(s)")
    result = await graph.ainvoke(
        {"input": input_text, "stage_index": 0, "current_input": input_text, "outputs": [], "output": ""},
        {"recursion_limit": runner.limits.max_steps + 10},
    )
    return result["output"]
