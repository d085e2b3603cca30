"""Workflow engine: starts runs, enforces loop limits and settles their terminal state."""

import asyncio
from collections.abc import Sequence

from langgraph.errors import GraphRecursionError

from chatcore.agents.registry import AgentRegistry, resolve_spec
from chatcore.errors import ChatCoreError, ErrorKind, StepLimitExceeded
from chatcore.graphs.evaluator import run_evaluator_optimizer
from chatcore.graphs.parallel import run_parallel
from chatcore.graphs.routing import run_routing
from chatcore.graphs.runtime import ProgressChannel, StepRunner, StepSink, StopRun
from chatcore.graphs.sequential import run_sequential
from chatcore.models.llm import LLMMessage, ModelDescriptor
from chatcore.models.messages import utcnow
from chatcore.models.workflow import (
    EvaluatorOptimizerSpec,
    ParallelSpec,
    RoutingSpec,
    RunStatus,
    SequentialSpec,
    WorkflowRun,
    WorkflowSpec,
)
from chatcore.services.gateway import ModelGateway
from chatcore.services.retry import RetryPolicy, Sleep
from chatcore.tools.executor import ToolExecutor
from chatcore.tools.registry import ToolsRegistry
from chatcore.utils.ids import new_id
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


class WorkflowHandle:
    """A started run: its record, its progress events and a cancellation signal."""

    def __init__(
        self,
        run: WorkflowRun,
        events: ProgressChannel,
        runner: StepRunner,
        conversation_id: str | None = None,
    ):
        self.run = run
        self.events = events
        self.conversation_id = conversation_id
        self._runner = runner
        self._task: asyncio.Task[WorkflowRun] | None = None

    def _attach(self, task: "asyncio.Task[WorkflowRun]") -> None:
        self._task = task

    def cancel(self) -> None:
        """Cancel the run, its in-flight gateway stream and any pending branches."""
        if self._task is not None and not self._task.done():
            logger.info(f"Cancelling run {self.run.id}")
            self._runner.cancel_streams()
            self._task.cancel()

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def result(self) -> WorkflowRun:
        """Wait for the run to reach a terminal state."""
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
            # Cancelled before the run body started
            if not self.run.is_terminal:
                settle_run(self.run, RunStatus.CANCELLED)
                self.events.close()
            return self.run


class WorkflowEngine:
    """Composes the gateway, tools and retry controller into orchestration patterns."""

    def __init__(
        self,
        gateway: ModelGateway,
        default_model: ModelDescriptor,
        tools: ToolsRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        tool_timeout_s: float | None = 30.0,
        sleep: Sleep = asyncio.sleep,
        agents: AgentRegistry | None = None,
    ):
        self.gateway = gateway
        self.agents = agents
        self.default_model = default_model
        self.tools = tools
        self.executor = ToolExecutor(tools, default_timeout_s=tool_timeout_s) if tools is not None else None
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    def resolve(self, spec: WorkflowSpec) -> WorkflowSpec:
        """Replace agent ids in ``spec`` with registered definitions.

        Raises:
            NotFoundError: If an agent id is not registered
        """
        return resolve_spec(spec, self.agents)

    def start(
        self,
        spec: WorkflowSpec,
        input_text: str,
        *,
        conversation_id: str | None = None,
        history: Sequence[LLMMessage] = (),
        sink: StepSink | None = None,
    ) -> WorkflowHandle:
        """Start a run in the background.

        Args:
            spec: Pattern configuration
            input_text: The user's input
            conversation_id: Conversation the run belongs to, if any
            history: Earlier conversation turns, prefixed to every step's messages
            sink: Live output of the final sequential stage (ignored by other patterns)

        Returns:
            Handle exposing the run record, its progress events and cancellation

        Raises:
            NotFoundError: If ``spec`` names an unregistered agent id
        """
        spec = self.resolve(spec)
        run = WorkflowRun(id=new_id(), pattern=spec.pattern)
        if conversation_id is not None:
            run.metadata["conversation_id"] = conversation_id
        events = ProgressChannel()
        runner = StepRunner(
            run,
            self.gateway,
            self.default_model,
            spec.limits,
            events,
            tools=self.tools,
            executor=self.executor,
            retry_policy=self.retry_policy,
            history=history,
            sleep=self.sleep,
        )
        handle = WorkflowHandle(run, events, runner, conversation_id)
        handle._attach(asyncio.create_task(self._execute(spec, input_text, runner, sink), name=f"workflow:{run.id}"))
        logger.info(f"Started {spec.pattern} run {run.id}")
        return handle

    async def run(self, spec: WorkflowSpec, input_text: str, **kwargs) -> WorkflowRun:
        """Start a run and wait for it to finish."""
        return await self.start(spec, input_text, **kwargs).result()

    async def _execute(
        self, spec: WorkflowSpec, input_text: str, runner: StepRunner, sink: StepSink | None
    ) -> WorkflowRun:
        run = runner.run
        timeout_ms = spec.limits.timeout_ms
        try:
            async with asyncio.timeout(timeout_ms / 1000 if timeout_ms is not None else None):
                output = await self._dispatch(spec, input_text, runner, sink)
            settle_run(run, RunStatus.COMPLETED, output=output)
        except StopRun as stop:
            settle_run(run, RunStatus.COMPLETED, output=stop.step.output)
        except TimeoutError:
            runner.cancel_streams()
            message = f"Timed out after {timeout_ms}ms"
            settle_run(run, RunStatus.FAILED, error_kind=ErrorKind.WORKFLOW_TIMEOUT, error_message=message)
        except asyncio.CancelledError:
            runner.cancel_streams()
            settle_run(run, RunStatus.CANCELLED)
        except GraphRecursionError as e:
            settle_run(run, RunStatus.FAILED, error_kind=StepLimitExceeded.kind, error_message=str(e))
        except ChatCoreError as e:
            settle_run(run, RunStatus.FAILED, error_kind=e.kind, error_message=str(e))
        except Exception as e:
            logger.error(f"Run {run.id} crashed: {e}", exc_info=True)
            settle_run(run, RunStatus.FAILED, error_kind=ErrorKind.EXECUTION_ERROR, error_message=str(e))
        finally:
            runner.progress.close()
        return run

    @staticmethod
    async def _dispatch(spec: WorkflowSpec, input_text: str, runner: StepRunner, sink: StepSink | None) -> str:
        match spec:
            case SequentialSpec():
                return await run_sequential(spec, input_text, runner, sink)
            case ParallelSpec():
                return await run_parallel(spec, input_text, runner)
            case RoutingSpec():
                return await run_routing(spec, input_text, runner)
            case EvaluatorOptimizerSpec():
                return await run_evaluator_optimizer(spec, input_text, runner)
        raise TypeError(f"Unsupported workflow spec: {type(spec).__name__}")


def settle_run(
    run: WorkflowRun,
    status: RunStatus,
    output: str | None = None,
    error_kind: ErrorKind | None = None,
    error_message: str | None = None,
) -> None:
    """Move a run to its terminal state."""
    run.status = status
    run.output = output
    run.error_kind = error_kind
    run.error_message = error_message
    run.ended_at = utcnow()
    elapsed_ms = (run.ended_at - run.started_at).total_seconds() * 1000
    if status == RunStatus.FAILED:
        logger.warning(f"Run {run.id} failed after {len(run.steps)} step(s): {error_kind}: {error_message}")
    else:
        logger.info(f"Run {run.id} {status} with {len(run.steps)} step(s) in {elapsed_ms:.0f}ms")
