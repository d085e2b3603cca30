"""Step execution shared by every workflow pattern.

A step is one agent invocation: a gateway call wrapped in the retry
controller, plus up to ``max_tool_rounds`` rounds of tool execution.
"""

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass

from chatcore.errors import ChatCoreError, ErrorKind, StepLimitExceeded
from chatcore.models.llm import GatewayEventKind, LLMMessage, LLMUsage, ModelDescriptor, ToolSpec
from chatcore.models.messages import ToolCall, ToolCallRecord, ToolResult
from chatcore.models.workflow import (
    AgentDefinition,
    ProgressEvent,
    StepStatus,
    WorkflowLimits,
    WorkflowRun,
    WorkflowStep,
)
from chatcore.services.gateway import GatewayStream, ModelGateway, StreamAccumulator, StreamResult
from chatcore.services.retry import RetryPolicy, Sleep, with_retry
from chatcore.tools.executor import ToolExecutor
from chatcore.tools.registry import ToolsRegistry
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


class ProgressChannel:
    """Step-level progress events for one run.

    Consumed lazily, at most once; iteration ends when the run terminates.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._closed = False
        self._consumed = False
        self.emitted: list[ProgressEvent] = []

    def emit(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self.emitted.append(event)
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        if self._consumed:
            raise RuntimeError("Progress events can only be consumed once")
        self._consumed = True
        return self._drain()

    async def _drain(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


@dataclass
class StepSink:
    """Receives live output of a step, e.g. to stream it into a stored message."""

    on_token: Callable[[str], None] | None = None
    on_tool_calls: Callable[[list[ToolCallRecord]], None] | None = None
    # Called before a retried attempt with the text to keep
    on_reset: Callable[[str], None] | None = None


class StopRun(Exception):
    """Raised when a stop condition ends the run early."""

    def __init__(self, step: WorkflowStep):
        super().__init__(f"Stop condition met at step {step.index}")
        self.step = step


def stop_on_tool_call(tool_name: str) -> Callable[[WorkflowStep], bool]:
    """Stop once a step has called ``tool_name``."""
    return lambda step: any(record.tool_name == tool_name for record in step.tool_calls)


def stop_on_text(keyword: str) -> Callable[[WorkflowStep], bool]:
    """Stop once a step's output contains ``keyword`` (case-insensitive)."""
    needle = keyword.casefold()
    return lambda step: needle in step.output.casefold()


def stop_after_steps(count: int) -> Callable[[WorkflowStep], bool]:
    """Stop once ``count`` steps have run, ending the run as completed rather than failed."""
    return lambda step: step.index + 1 >= count


def stop_on_tool_errors(threshold: int) -> Callable[[WorkflowStep], bool]:
    """Stop when a step's last ``threshold`` tool calls all failed."""

    def condition(step: WorkflowStep) -> bool:
        recent = step.tool_calls[-threshold:]
        return len(recent) == threshold and all(record.status == "error" for record in recent)

    return condition


def stop_when_stable(window: int = 2) -> Callable[[WorkflowStep], bool]:
    """Stop when the last ``window`` step outputs are identical, ignoring case and outer whitespace.

    Keeps the outputs it has seen, so build a new one for every run.
    """
    seen: deque[str] = deque(maxlen=window)

    def condition(step: WorkflowStep) -> bool:
        seen.append(step.output.strip().casefold())
        return len(seen) == window and len(set(seen)) == 1

    return condition


def stop_when_any(*conditions: Callable[[WorkflowStep], bool]) -> Callable[[WorkflowStep], bool]:
    """Combine stop conditions; every one sees each step."""

    def condition(step: WorkflowStep) -> bool:
        return any([check(step) for check in conditions])

    return condition


def format_for_model(result: ToolResult) -> LLMMessage:
    """Render a tool result, including failures, as a tool message for the model."""
    return LLMMessage(role="tool", content=result.content, tool_call_id=result.id, is_error=not result.ok)


class StepRunner:
    """Runs agent steps for a single workflow run and records them on it."""

    def __init__(
        self,
        run: WorkflowRun,
        gateway: ModelGateway,
        default_model: ModelDescriptor,
        limits: WorkflowLimits,
        progress: ProgressChannel,
        *,
        tools: ToolsRegistry | None = None,
        executor: ToolExecutor | None = None,
        retry_policy: RetryPolicy | None = None,
        history: Sequence[LLMMessage] = (),
        sleep: Sleep = asyncio.sleep,
    ):
        self.run = run
        self.gateway = gateway
        self.default_model = default_model
        self.limits = limits
        self.progress = progress
        self.tools = tools
        self.executor = executor or (ToolExecutor(tools) if tools is not None else None)
        self.retry_policy = retry_policy or RetryPolicy()
        self.history = list(history)
        self.sleep = sleep
        self._active_streams: set[GatewayStream] = set()

    def reserve_step(self, agent: AgentDefinition, input_text: str) -> WorkflowStep:
        """Claim the next step index.

        Raises:
            StepLimitExceeded: If the run has already used ``max_steps`` steps
        """
        if len(self.run.steps) >= self.limits.max_steps:
            raise StepLimitExceeded(f"Run {self.run.id} exceeded {self.limits.max_steps} steps")
        step = WorkflowStep(index=len(self.run.steps), agent_id=agent.id, input=input_text)
        self.run.steps.append(step)
        return step

    async def run_step(self, agent: AgentDefinition, input_text: str, sink: StepSink | None = None) -> WorkflowStep:
        """Execute one agent invocation as a step.

        Raises:
            ChatCoreError: When the step fails; the failed step stays on the run
            StopRun: When the run's stop condition matches this step
        """
        step = self.reserve_step(agent, input_text)
        logger.info(f"Run {self.run.id} step {step.index}: agent {agent.id}")
        self.progress.emit(ProgressEvent(step.index, agent.id, StepStatus.RUNNING))

        start = time.perf_counter()
        try:
            await self._invoke(agent, step, sink or StepSink())
        except ChatCoreError as e:
            self._fail(step, e.kind, str(e), start)
            raise
        except asyncio.CancelledError:
            step.duration_ms = (time.perf_counter() - start) * 1000
            step.error_message = "cancelled"
            raise
        except Exception as e:
            self._fail(step, ErrorKind.EXECUTION_ERROR, str(e), start)
            raise

        step.duration_ms = (time.perf_counter() - start) * 1000
        self.progress.emit(ProgressEvent(step.index, agent.id, StepStatus.COMPLETED, step.output))
        logger.debug(f"Step {step.index} completed in {step.duration_ms:.0f}ms ({step.tokens_used} tokens)")

        if self.limits.stop_condition is not None and self.limits.stop_condition(step):
            logger.info(f"Stop condition met at step {step.index}")
            raise StopRun(step)
        return step

    def _fail(self, step: WorkflowStep, kind: ErrorKind, message: str, start: float) -> None:
        step.error = kind
        step.error_message = message
        step.duration_ms = (time.perf_counter() - start) * 1000
        logger.warning(f"Step {step.index} ({step.agent_id}) failed: {kind}: {message}")
        self.progress.emit(ProgressEvent(step.index, step.agent_id, StepStatus.FAILED, step.output or None))

    async def _invoke(self, agent: AgentDefinition, step: WorkflowStep, sink: StepSink) -> None:
        descriptor = agent.model or self.default_model
        tool_specs = self._tool_specs(agent)
        messages = [*self.history, LLMMessage(role="user", content=step.input)]
        usage = LLMUsage()

        for tool_round in range(agent.max_tool_rounds + 1):
            committed = step.output

            def reset(attempt: int, error: ChatCoreError, delay_ms: float) -> None:
                step.output = committed
                if sink.on_reset is not None:
                    sink.on_reset(committed)

            result = await with_retry(
                lambda: self._stream_once(descriptor, messages, tool_specs, agent, step, sink),
                self.retry_policy,
                sleep=self.sleep,
                on_retry=reset,
            )
            usage.add(result.usage)
            step.tokens_used = usage.total_tokens

            if not result.tool_calls:
                return
            if tool_round == agent.max_tool_rounds or self.executor is None:
                logger.warning(f"Agent {agent.id} requested tools after {tool_round} round(s), stopping")
                return

            calls = [ToolCall(id=c.id, tool_name=c.name, raw_input=c.arguments) for c in result.tool_calls]
            running = [ToolCallRecord(id=c.id, tool_name=c.tool_name, raw_input=c.raw_input) for c in calls]
            if sink.on_tool_calls is not None:
                sink.on_tool_calls([*step.tool_calls, *running])

            results = await self.executor.execute(calls, agent.tool_mode)
            step.tool_calls.extend(
                ToolCallRecord.from_result(call, result) for call, result in zip(calls, results, strict=False)
            )
            if sink.on_tool_calls is not None:
                sink.on_tool_calls(list(step.tool_calls))

            messages.append(LLMMessage(role="assistant", content=result.text, tool_calls=result.tool_calls))
            messages.extend(format_for_model(r) for r in results)

    async def _stream_once(
        self,
        descriptor: ModelDescriptor,
        messages: list[LLMMessage],
        tool_specs: list[ToolSpec] | None,
        agent: AgentDefinition,
        step: WorkflowStep,
        sink: StepSink,
    ) -> StreamResult:
        stream = self.gateway.call(descriptor, messages, tools=tool_specs, system_prompt=agent.system_prompt or None)
        self._active_streams.add(stream)
        accumulator = StreamAccumulator()
        try:
            async for event in stream:
                accumulator.add(event)
                if event.kind == GatewayEventKind.TOKEN and event.text:
                    step.output += event.text
                    if sink.on_token is not None:
                        sink.on_token(event.text)
                    self.progress.emit(ProgressEvent(step.index, agent.id, StepStatus.STREAMING, step.output))
        finally:
            stream.cancel()
            self._active_streams.discard(stream)
        return accumulator.result()

    def _tool_specs(self, agent: AgentDefinition) -> list[ToolSpec] | None:
        if agent.tools is None or self.tools is None:
            return None
        specs = self.tools.get_specs(agent.tools or None)
        return specs or None

    def cancel_streams(self) -> None:
        for stream in list(self._active_streams):
            stream.cancel()
