"""Routing pattern: a classifier picks a named handler, with a fallback that always catches."""

import asyncio
import json
import re
from collections.abc import Sequence
from typing import Any

from langgraph.graph import END, StateGraph

from chatcore.graphs.parallel import SECTION_SEPARATOR
from chatcore.graphs.runtime import StepRunner
from chatcore.graphs.state import RoutingState
from chatcore.models.workflow import RouteHandler, RoutingSpec
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

FALLBACK_ROUTE = "fallback"

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def build_classification_prompt(spec: RoutingSpec, input_text: str) -> str:
    if spec.classification_prompt:
        if "{input}" in spec.classification_prompt:
            return spec.classification_prompt.replace("{input}", input_text)
        return f"{spec.classification_prompt}\n\nInput: {input_text}"

    categories = "\n".join(f"- {h.name}: {h.description or h.agent.display_name}" for h in spec.handlers)
    if spec.allow_multiple_routes:
        answer = '{"routes": ["<category name>", ...]}'
    else:
        answer = '{"route": "<category name>"}'
    return (
        "Classify the following input into one of these categories:\n\n"
        f"{categories}\n\n"
        f"Respond only with JSON: {answer}\n\n"
        f"Input: {input_text}"
    )


def parse_classification(output: str, handlers: Sequence[RouteHandler]) -> list[str]:
    """Extract handler names from classifier output.

    JSON (``route``, ``routes`` or ``category``) is tried first; otherwise
    the text is searched for handler names and trigger keywords. Unknown
    names are dropped, so an empty list means "use the fallback".
    """
    by_key = {h.name.casefold(): h.name for h in handlers}

    parsed = _parse_json(output)
    if parsed is not None:
        if isinstance(parsed.get("routes"), list):
            candidates = parsed["routes"]
        else:
            candidates = [parsed.get("route") or parsed.get("category")]
        keys = [c.strip().casefold() for c in candidates if isinstance(c, str)]
        names = [by_key[key] for key in keys if key in by_key]
        return list(dict.fromkeys(names))

    text = output.casefold()
    names = []
    for handler in handlers:
        if handler.name.casefold() in text or any(t.casefold() in text for t in handler.triggers):
            names.append(handler.name)
    return names


def _parse_json(output: str) -> dict[str, Any] | None:
    stripped = output.strip()
    match = _JSON_OBJECT.search(stripped)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def create_routing_graph(spec: RoutingSpec, runner: StepRunner):
    """Create the classify / dispatch graph."""
    handlers = {h.name: h for h in spec.handlers}

    async def classify_node(state: RoutingState) -> dict[str, Any]:
        step = await runner.run_step(spec.classifier, build_classification_prompt(spec, state["input"]))
        routes = parse_classification(step.output, spec.handlers)
        if not spec.allow_multiple_routes:
            routes = routes[:1]
        elif spec.max_routes is not None:
            routes = routes[: spec.max_routes]

        if not routes:
            logger.info("Classifier output matched no handler, using fallback")
        else:
            logger.info(f"Routing to: {', '.join(routes)}")
        return {"classification": step.output, "routes": routes}

    async def dispatch_node(state: RoutingState) -> dict[str, Any]:
        routes = state["routes"]
        runner.run.metadata["routes"] = routes or [FALLBACK_ROUTE]
        runner.run.metadata["classification"] = state["classification"]

        if not routes:
            step = await runner.run_step(spec.fallback, state["input"])
            output = step.output
            route_names = [FALLBACK_ROUTE]
        elif len(routes) == 1:
            step = await runner.run_step(handlers[routes[0]].agent, state["input"])
            output = step.output
            route_names = routes
        else:
            results = await asyncio.gather(
                *(runner.run_step(handlers[name].agent, state["input"]) for name in routes),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            output = SECTION_SEPARATOR.join(
                f"## {name}\n\n{step.output}" for name, step in zip(routes, results, strict=True)
            )
            route_names = routes

        if spec.include_routing_note:
            output = f"[Routed to: {', '.join(route_names)}]\n\n{output}"
        return {"output": output}

    workflow = StateGraph(RoutingState)
    workflow.add_node("classify", classify_node)
    workflow.add_node("dispatch", dispatch_node)
    workflow.set_entry_point("classify")
    workflow.add_edge("classify", "dispatch")
    workflow.add_edge("dispatch", END)
    return workflow.compile()


async def run_routing(spec: RoutingSpec, input_text: str, runner: StepRunner) -> str:
    graph = create_routing_graph(spec, runner)
    result = await graph.ainvoke({"input": input_text}, {"recursion_limit": 10})
    return result["output"]
