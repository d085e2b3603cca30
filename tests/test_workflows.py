"""Tests for the workflow engine and its orchestration patterns."""

import asyncio

import pytest

from chatcore.errors import AuthError, ErrorKind, ProviderUnavailable, RateLimited
from chatcore.graphs.evaluator import parse_score
from chatcore.graphs.parallel import vote_outputs
from chatcore.graphs.routing import parse_classification
from chatcore.graphs.runtime import (
    StepSink,
    stop_after_steps,
    stop_on_text,
    stop_on_tool_call,
    stop_on_tool_errors,
    stop_when_any,
    stop_when_stable,
)
from chatcore.models.llm import GatewayEvent, LLMMessage
from chatcore.models.messages import ToolCallRecord
from chatcore.models.workflow import (
    AgentDefinition,
    AggregationStrategy,
    EvaluatorOptimizerSpec,
    ParallelSpec,
    RouteHandler,
    RoutingSpec,
    RunStatus,
    SequentialSpec,
    SequentialStage,
    StepStatus,
    WorkflowLimits,
    WorkflowStep,
)
from tests.scripted import reply, tool_use


def agent(name, **kwargs):
    """An agent whose system prompt is its name, so scripted replies can key on it."""
    return AgentDefinition(id=name, system_prompt=name, **kwargs)


def by_prompt(answers):
    """Answer each call by system prompt.

    Values are reply text, a list of texts consumed in order, or a raw turn.
    """

    def respond(messages, system_prompt):
        answer = answers[system_prompt]
        if isinstance(answer, list) and answer and isinstance(answer[0], str):
            answer = answer.pop(0)
        return reply(answer) if isinstance(answer, str) else answer

    return respond


def calls_for(adapter, system_prompt):
    return [c for c in adapter.calls if c["system_prompt"] == system_prompt]


class TestSequential:
    """Tests for the sequential pipeline."""

    @pytest.mark.asyncio
    async def test_each_stage_feeds_the_next(self, engine, adapter):
        """Test that stage outputs become the next stage's input."""
        adapter.respond = by_prompt({"outline": "1. intro 2. body", "draft": "Full essay"})
        spec = SequentialSpec(stages=[SequentialStage(agent("outline")), SequentialStage(agent("draft"))])

        run = await engine.run(spec, "Write about rivers")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "Full essay"
        assert [s.agent_id for s in run.steps] == ["outline", "draft"]
        assert calls_for(adapter, "outline")[0]["messages"][-1].content == "Write about rivers"
        assert calls_for(adapter, "draft")[0]["messages"][-1].content == "1. intro 2. body"
        assert run.ended_at is not None

    @pytest.mark.asyncio
    async def test_transform_and_previous_context(self, engine, adapter):
        """Test stage transforms and the accumulated-context input format."""
        adapter.respond = by_prompt({"first": "alpha", "second": "beta"})
        spec = SequentialSpec(
            stages=[
                SequentialStage(agent("first"), transform=lambda output, index: output.upper()),
                SequentialStage(agent("second")),
            ],
            include_previous_context=True,
        )

        await engine.run(spec, "task")

        assert calls_for(adapter, "second")[0]["messages"][-1].content == (
            "Step 1 (first): ALPHA\n\nNow process the following:\ntask"
        )

    @pytest.mark.asyncio
    async def test_sink_receives_final_stage_only(self, engine, adapter):
        """Test that live tokens are forwarded for the last stage only."""
        adapter.respond = by_prompt({"first": "hidden", "second": "visible"})
        tokens = []
        spec = SequentialSpec(stages=[SequentialStage(agent("first")), SequentialStage(agent("second"))])

        await engine.run(spec, "go", sink=StepSink(on_token=tokens.append))

        assert "".join(tokens) == "visible"

    @pytest.mark.asyncio
    async def test_history_prefixes_every_call(self, engine, adapter):
        """Test that conversation history comes before the step input."""
        adapter.script.append(reply("Paris"))
        history = [LLMMessage(role="user", content="Hi"), LLMMessage(role="assistant", content="Hello!")]

        await engine.run(SequentialSpec.single(agent("assistant")), "Capital of France?", history=history)

        assert [m.content for m in adapter.calls[0]["messages"]] == ["Hi", "Hello!", "Capital of France?"]


class TestParallel:
    """Tests for fan-out and aggregation."""

    @pytest.mark.asyncio
    async def test_majority_vote(self, engine, adapter):
        """Test that the plurality answer wins a vote."""
        adapter.respond = by_prompt({"voter_a": "A", "voter_b": "A", "voter_c": "B"})
        spec = ParallelSpec(
            branches=[agent("voter_a"), agent("voter_b"), agent("voter_c")],
            aggregation=AggregationStrategy.VOTE,
        )

        run = await engine.run(spec, "Pick A or B")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "A"
        assert len(run.steps) == 3

    def test_vote_tie_goes_to_earliest_branch(self):
        """Test that ties are broken by branch order and matching is normalized."""
        assert vote_outputs(["B", "A", " b ", "a"]) == "B"

    @pytest.mark.asyncio
    async def test_concatenation_follows_branch_order(self, engine, adapter):
        """Test that a slower first branch still comes first in the output."""
        adapter.respond = by_prompt({"slow": "alpha", "fast": "beta"})
        adapter.delays["slow"] = 0.05
        spec = ParallelSpec(branches=[agent("slow"), agent("fast")])

        run = await engine.run(spec, "go")

        assert run.output == "## slow\n\nalpha\n\n---\n\n## fast\n\nbeta"

    @pytest.mark.asyncio
    async def test_first_strategy_cancels_the_rest(self, engine, adapter):
        """Test that the first branch to finish wins and the others are cancelled."""
        adapter.respond = by_prompt({"slow": "late", "fast": "quick"})
        adapter.delays["slow"] = 10
        spec = ParallelSpec(branches=[agent("slow"), agent("fast")], aggregation=AggregationStrategy.FIRST)

        run = await asyncio.wait_for(engine.run(spec, "go"), timeout=5)

        assert run.status == RunStatus.COMPLETED
        assert run.output == "quick"

    @pytest.mark.asyncio
    async def test_failed_branch_tolerated_by_min_successful(self, engine, adapter):
        """Test that aggregation proceeds when enough branches succeed."""
        adapter.respond = by_prompt({"a": "one", "b": AuthError("bad key"), "c": "three"})
        spec = ParallelSpec(branches=[agent("a"), agent("b"), agent("c")], min_successful=2)

        run = await engine.run(spec, "go")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "## a\n\none\n\n---\n\n## c\n\nthree"
        assert [s.error for s in run.steps].count(ErrorKind.AUTH_ERROR) == 1

    @pytest.mark.asyncio
    async def test_too_few_successes_fails_run(self, engine, adapter):
        """Test that the run fails when fewer than min_successful branches succeed."""
        adapter.respond = by_prompt({"a": "one", "b": AuthError("bad key")})
        spec = ParallelSpec(branches=[agent("a"), agent("b")], min_successful=2)

        run = await engine.run(spec, "go")

        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.AUTH_ERROR

    @pytest.mark.asyncio
    async def test_custom_reducer_and_synthesizer(self, engine, adapter):
        """Test that the reducer output is handed to the synthesizer."""
        adapter.respond = by_prompt({"a": "x", "b": "y", "editor": "merged"})
        spec = ParallelSpec(
            branches=[agent("a"), agent("b")],
            aggregation=AggregationStrategy.CUSTOM,
            reducer=lambda outputs, steps: "+".join(outputs),
            synthesizer=agent("editor"),
        )

        run = await engine.run(spec, "go")

        assert run.output == "merged"
        assert calls_for(adapter, "editor")[0]["messages"][-1].content.endswith("x+y")


class TestRouting:
    """Tests for classification and dispatch."""

    @pytest.fixture
    def handlers(self):
        return [
            RouteHandler("billing", agent("billing_agent"), description="Payments and invoices"),
            RouteHandler("tech", agent("tech_agent"), triggers=["error", "crash"]),
        ]

    @pytest.mark.asyncio
    async def test_routes_to_classified_handler(self, engine, adapter, handlers):
        """Test that the classifier's JSON answer picks the handler."""
        adapter.respond = by_prompt(
            {"classifier": '{"route": "billing"}', "billing_agent": "Refund issued", "general": "?"}
        )
        spec = RoutingSpec(classifier=agent("classifier"), handlers=handlers, fallback=agent("general"))

        run = await engine.run(spec, "I was charged twice")

        assert run.output == "Refund issued"
        assert run.metadata["routes"] == ["billing"]
        assert "I was charged twice" in calls_for(adapter, "classifier")[0]["messages"][-1].content

    @pytest.mark.asyncio
    async def test_unknown_route_uses_fallback_once(self, engine, adapter, handlers):
        """Test that an unmatched classification runs the fallback exactly once."""
        adapter.respond = by_prompt({"classifier": "I have no idea", "general": "General answer"})
        spec = RoutingSpec(
            classifier=agent("classifier"), handlers=handlers, fallback=agent("general"), include_routing_note=True
        )

        run = await engine.run(spec, "Tell me a joke")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "[Routed to: fallback]\n\nGeneral answer"
        assert len(calls_for(adapter, "general")) == 1
        assert not calls_for(adapter, "billing_agent") and not calls_for(adapter, "tech_agent")

    @pytest.mark.asyncio
    async def test_multiple_routes(self, engine, adapter, handlers):
        """Test that several handlers run and their outputs are sectioned."""
        adapter.respond = by_prompt(
            {"classifier": '{"routes": ["tech", "billing"]}', "billing_agent": "B", "tech_agent": "T"}
        )
        spec = RoutingSpec(
            classifier=agent("classifier"),
            handlers=handlers,
            fallback=agent("general"),
            allow_multiple_routes=True,
        )

        run = await engine.run(spec, "My payment page shows an error")

        assert run.output == "## tech\n\nT\n\n---\n\n## billing\n\nB"

    def test_parse_classification_keywords(self, handlers):
        """Test trigger-keyword matching when the classifier answers in prose."""
        assert parse_classification("Looks like an app crash to me", handlers) == ["tech"]
        assert parse_classification('{"category": "BILLING"}', handlers) == ["billing"]
        assert parse_classification('{"route": "shipping"}', handlers) == []


class TestEvaluatorOptimizer:
    """Tests for the generate / evaluate / refine loop."""

    @pytest.mark.asyncio
    async def test_stops_at_max_iterations_with_latest_output(self, engine, adapter):
        """Test that a loop that never reaches the threshold completes with its last candidate."""
        adapter.respond = by_prompt(
            {
                "generator": ["draft 1", "draft 2", "draft 3"],
                "evaluator": [
                    "SCORE: 50\nFEEDBACK: needs detail",
                    "SCORE: 70\nFEEDBACK: closer",
                    "SCORE: 80\nFEEDBACK: almost",
                ],
            }
        )
        spec = EvaluatorOptimizerSpec(
            generator=agent("generator"), evaluator=agent("evaluator"), threshold=0.9, max_iterations=3
        )

        run = await engine.run(spec, "Write a haiku")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "draft 3"
        assert run.metadata["scores"] == [0.5, 0.7, 0.8]
        assert [s.agent_id for s in run.steps] == [
            "generator",
            "evaluator",
            "generator",
            "evaluator",
            "generator",
            "evaluator",
        ]
        refine_prompt = calls_for(adapter, "generator")[1]["messages"][-1].content
        assert "needs detail" in refine_prompt
        assert "Score: 50/100" in refine_prompt

    @pytest.mark.asyncio
    async def test_score_equal_to_threshold_stops(self, engine, adapter):
        """Test that reaching the threshold exactly ends the loop."""
        adapter.respond = by_prompt({"generator": "good", "evaluator": "SCORE: 90 FEEDBACK: fine"})
        spec = EvaluatorOptimizerSpec(generator=agent("generator"), evaluator=agent("evaluator"), threshold=0.9)

        run = await engine.run(spec, "go")

        assert run.output == "good"
        assert len(run.steps) == 2

    @pytest.mark.asyncio
    async def test_custom_score_parser(self, engine, adapter):
        adapter.respond = by_prompt({"generator": "text", "evaluator": "great"})
        spec = EvaluatorOptimizerSpec(
            generator=agent("generator"),
            evaluator=agent("evaluator"),
            score_parser=lambda output: 1.0 if output == "great" else 0.0,
        )

        run = await engine.run(spec, "go")

        assert run.metadata["scores"] == [1.0]

    @pytest.mark.parametrize(
        "text,expected",
        [("SCORE: 0.8", 0.8), ("SCORE: 85 FEEDBACK: ok", 0.85), ("Score: 8/10", 0.8), ("I give it 45/100", 0.45)],
    )
    def test_parse_score(self, text, expected):
        assert parse_score(text) == pytest.approx(expected)

    def test_missing_score_is_zero(self):
        assert parse_score("Looks fine to me") == 0.0


class TestLimitsAndLifecycle:
    """Tests for step limits, timeouts, cancellation and stop conditions."""

    @pytest.mark.asyncio
    async def test_step_limit_fails_run(self, engine, adapter):
        """Test that exceeding max_steps fails the run with StepLimitExceeded."""
        adapter.respond = by_prompt({"generator": "meh", "evaluator": "SCORE: 10"})
        spec = EvaluatorOptimizerSpec(
            generator=agent("generator"),
            evaluator=agent("evaluator"),
            max_iterations=10,
            limits=WorkflowLimits(max_steps=3),
        )

        run = await engine.run(spec, "go")

        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.STEP_LIMIT_EXCEEDED
        assert len(run.steps) == 3

    @pytest.mark.asyncio
    async def test_timeout_fails_run(self, engine, adapter):
        """Test that a run exceeding its time budget fails with WorkflowTimeout."""
        adapter.respond = by_prompt({"slow": "never"})
        adapter.delays["slow"] = 10
        spec = SequentialSpec.single(agent("slow"), WorkflowLimits(timeout_ms=50))

        run = await asyncio.wait_for(engine.run(spec, "go"), timeout=5)

        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.WORKFLOW_TIMEOUT

    @pytest.mark.asyncio
    async def test_cancel_running_workflow(self, engine, adapter):
        """Test that cancelling a handle settles the run as cancelled."""
        adapter.respond = by_prompt({"slow": "never"})
        adapter.delays["slow"] = 10
        handle = engine.start(SequentialSpec.single(agent("slow")), "go")
        await asyncio.sleep(0.01)

        handle.cancel()
        run = await asyncio.wait_for(handle.result(), timeout=5)

        assert run.status == RunStatus.CANCELLED
        assert handle.done()
        assert handle.events.closed

    @pytest.mark.asyncio
    async def test_cancel_abandons_pending_branches(self, engine, adapter):
        """Test that cancelling a parallel run does not wait for its branches."""
        adapter.respond = by_prompt({"left": "never", "right": "never"})
        adapter.delays.update(left=10, right=10)
        handle = engine.start(ParallelSpec(branches=[agent("left"), agent("right")]), "go")
        while len(adapter.calls) < 2:
            await asyncio.sleep(0.001)

        handle.cancel()
        run = await asyncio.wait_for(handle.result(), timeout=1)

        assert run.status == RunStatus.CANCELLED
        assert handle.events.closed
        statuses = [e.status for e in handle.events.emitted]
        assert statuses.count(StepStatus.RUNNING) == 2
        assert StepStatus.COMPLETED not in statuses
        assert all(s.output == "" for s in run.steps)

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, engine, adapter):
        """Test that a run cancelled before it begins is still settled."""
        handle = engine.start(SequentialSpec.single(agent("assistant")), "go")
        handle.cancel()

        run = await handle.result()

        assert run.status == RunStatus.CANCELLED
        assert run.ended_at is not None
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_stop_condition_ends_run_early(self, engine, adapter):
        """Test that a matching stop condition completes the run with that step's output."""
        adapter.respond = by_prompt({"first": "DONE already", "second": "unused"})
        spec = SequentialSpec(
            stages=[SequentialStage(agent("first")), SequentialStage(agent("second"))],
            limits=WorkflowLimits(stop_condition=stop_on_text("done")),
        )

        run = await engine.run(spec, "go")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "DONE already"
        assert len(run.steps) == 1

    @pytest.mark.asyncio
    async def test_stop_after_steps_completes_instead_of_failing(self, engine, adapter):
        """Test that a step-count stop ends the run as completed before max_steps trips."""
        adapter.respond = by_prompt({"a": "one", "b": "two", "c": "three"})
        spec = SequentialSpec(
            stages=[SequentialStage(agent(name)) for name in "abc"],
            limits=WorkflowLimits(max_steps=3, stop_condition=stop_after_steps(2)),
        )

        run = await engine.run(spec, "go")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "two"
        assert calls_for(adapter, "c") == []

    @pytest.mark.asyncio
    async def test_stable_output_stops_pipeline(self, engine, adapter):
        """Test that a run stops once consecutive outputs stop changing."""
        adapter.respond = by_prompt({"a": "Draft", "b": "draft ", "c": "unused"})
        spec = SequentialSpec(
            stages=[SequentialStage(agent(name)) for name in "abc"],
            limits=WorkflowLimits(stop_condition=stop_when_any(stop_on_text("never"), stop_when_stable(2))),
        )

        run = await engine.run(spec, "go")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "draft "
        assert calls_for(adapter, "c") == []

    def test_stop_on_tool_errors(self):
        """Test that only a trailing run of failed tool calls triggers the stop."""
        condition = stop_on_tool_errors(2)

        def step_with(*statuses):
            records = [ToolCallRecord(id=str(i), tool_name="calculate", status=s) for i, s in enumerate(statuses)]
            return WorkflowStep(index=0, agent_id="a", input="go", tool_calls=records)

        assert condition(step_with("completed", "error", "error"))
        assert not condition(step_with("error", "completed"))
        assert not condition(step_with("error"))

    @pytest.mark.asyncio
    async def test_progress_events(self, engine, adapter):
        """Test the step-level progress sequence and single consumption."""
        adapter.script.append(reply("one two three", chunks=3))
        handle = engine.start(SequentialSpec.single(agent("assistant")), "go")

        events = [event async for event in handle.events]
        await handle.result()

        statuses = [e.status for e in events]
        assert statuses[0] == StepStatus.RUNNING
        assert statuses[-1] == StepStatus.COMPLETED
        assert StepStatus.STREAMING in statuses
        assert events[-1].partial_output == "one two three"
        with pytest.raises(RuntimeError):
            aiter(handle.events)


class TestStepExecution:
    """Tests for retries and tool rounds inside a step."""

    @pytest.mark.asyncio
    async def test_rate_limit_retry_honors_retry_after(self, engine, adapter, sleeps):
        """Test that retry_after hints drive the backoff and the step then succeeds."""
        adapter.script.extend(
            [RateLimited("busy", retry_after_ms=500), RateLimited("busy", retry_after_ms=500), reply("ok")]
        )

        run = await engine.run(SequentialSpec.single(agent("assistant")), "hi")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "ok"
        assert sleeps == [0.5, 0.5]
        assert len(run.steps) == 1

    @pytest.mark.asyncio
    async def test_retry_discards_partial_attempt(self, engine, adapter):
        """Test that tokens from a failed attempt are dropped before retrying."""
        adapter.script.extend(
            [[GatewayEvent.token("par"), GatewayEvent.failure(ProviderUnavailable("dropped"))], reply("full")]
        )
        resets = []

        run = await engine.run(
            SequentialSpec.single(agent("assistant")), "hi", sink=StepSink(on_reset=resets.append)
        )

        assert run.output == "full"
        assert resets == [""]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_run(self, engine, adapter, sleeps):
        """Test that a persistent retryable error fails the run after max attempts."""
        adapter.respond = lambda messages, system_prompt: ProviderUnavailable("down")

        run = await engine.run(SequentialSpec.single(agent("assistant")), "hi")

        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.PROVIDER_UNAVAILABLE
        assert len(adapter.calls) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, engine, adapter):
        """Test that tool calls are executed and their results sent back to the model."""
        adapter.script.extend(
            [tool_use(("call_1", "calculate", {"expression": "2 + 2"}), text="Let me compute."), reply("It is 4.")]
        )

        run = await engine.run(SequentialSpec.single(agent("assistant", tools=[])), "What is 2+2?")

        assert run.output == "Let me compute.It is 4."
        step = run.steps[0]
        assert [r.status for r in step.tool_calls] == ["completed"]
        assert {s.name for s in adapter.calls[0]["tools"]} == {"calculate", "get_weather", "search_web"}

        follow_up = adapter.calls[1]["messages"]
        assert follow_up[-2].tool_calls[0].name == "calculate"
        assert follow_up[-1].role == "tool"
        assert '"result": 4.0' in follow_up[-1].content
        assert not follow_up[-1].is_error

    @pytest.mark.asyncio
    async def test_invalid_tool_input_goes_back_to_model(self, engine, adapter):
        """Test that a failed tool call is reported to the model, not raised."""
        adapter.script.extend([tool_use(("c1", "calculate", {"expression": "import os"})), reply("Sorry.")])

        run = await engine.run(SequentialSpec.single(agent("assistant", tools=["calculate"])), "hack")

        assert run.status == RunStatus.COMPLETED
        assert run.steps[0].tool_calls[0].error_kind == ErrorKind.INVALID_INPUT
        assert adapter.calls[1]["messages"][-1].is_error

    @pytest.mark.asyncio
    async def test_stop_on_tool_call(self, engine, adapter):
        adapter.script.extend([tool_use(("c1", "get_weather", {"location": "Oslo"})), reply("Cold.")])
        spec = SequentialSpec.single(
            agent("assistant", tools=[]), WorkflowLimits(stop_condition=stop_on_tool_call("get_weather"))
        )

        run = await engine.run(spec, "Weather?")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "Cold."

    @pytest.mark.asyncio
    async def test_tools_not_advertised_without_opt_in(self, engine, adapter):
        """Test that agents without a tool list get no tool schemas."""
        adapter.script.append(reply("plain"))
        await engine.run(SequentialSpec.single(agent("assistant")), "hi")
        assert adapter.calls[0]["tools"] is None
